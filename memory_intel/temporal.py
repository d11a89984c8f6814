"""Temporal analytics over active memories.

Days are UTC calendar days (``date(created_at, 'unixepoch')``).
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from .storage import MemoryStorage

logger = logging.getLogger(__name__)

DateLike = Union[str, date]

_DAY_SQL = "date(created_at, 'unixepoch')"
MAX_MEMORIES_PER_DAY = 20
_STREAK_WINDOW_DAYS = 365


@dataclass
class TimelineEntry:
    date: str
    count: int
    memories: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TemporalStats:
    total_days: int = 0
    avg_per_day: float = 0.0
    most_active_day: Optional[str] = None
    most_active_count: int = 0
    streak_current: int = 0
    streak_longest: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _day(value: DateLike) -> str:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    try:
        return date.fromisoformat(value.strip()[:10]).isoformat()
    except ValueError as exc:
        raise ValueError(f"invalid date {value!r}; expected YYYY-MM-DD") from exc


def get_timeline(
    storage: MemoryStorage,
    after: Optional[DateLike] = None,
    before: Optional[DateLike] = None,
    limit: int = 30,
    include_memories: bool = False,
) -> List[TimelineEntry]:
    """Per-day counts of active memories, most recent day first.

    *after* and *before* are inclusive day bounds. With *include_memories*
    each day carries up to 20 memories, most important then newest first.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")
    conditions = ["is_active = 1"]
    params: List[Any] = []
    if after is not None:
        conditions.append(f"{_DAY_SQL} >= ?")
        params.append(_day(after))
    if before is not None:
        conditions.append(f"{_DAY_SQL} <= ?")
        params.append(_day(before))
    if len(params) == 2 and params[0] > params[1]:
        raise ValueError("'after' must not be later than 'before'")

    conn = storage._get_conn()
    rows = conn.execute(
        f"""SELECT {_DAY_SQL} AS day, COUNT(*) AS count
            FROM memories WHERE {' AND '.join(conditions)}
            GROUP BY day
            ORDER BY day DESC
            LIMIT ?""",
        (*params, limit),
    ).fetchall()

    timeline = [TimelineEntry(date=r["day"], count=r["count"]) for r in rows]
    if include_memories:
        for entry in timeline:
            mems = conn.execute(
                f"""SELECT id, content, content_type, source, importance, created_at
                    FROM memories
                    WHERE {_DAY_SQL} = ? AND is_active = 1
                    ORDER BY importance DESC, created_at DESC
                    LIMIT ?""",
                (entry.date, MAX_MEMORIES_PER_DAY),
            ).fetchall()
            entry.memories = [dict(m) for m in mems]
    return timeline


def _longest_run(days: List[date]) -> int:
    longest = 0
    run = 0
    prev: Optional[date] = None
    for d in days:
        run = run + 1 if prev is not None and (d - prev).days == 1 else 1
        longest = max(longest, run)
        prev = d
    return longest


def get_temporal_stats(storage: MemoryStorage, today: Optional[date] = None) -> TemporalStats:
    """Activity statistics over the days that have at least one active memory.

    The current streak counts consecutive days ending today; today itself
    may be empty without breaking it.
    """
    conn = storage._get_conn()
    rows = conn.execute(
        f"""SELECT {_DAY_SQL} AS day, COUNT(*) AS count
            FROM memories WHERE is_active = 1
            GROUP BY day
            ORDER BY day ASC"""
    ).fetchall()
    if not rows:
        return TemporalStats()

    total = sum(r["count"] for r in rows)
    most_active = rows[0]
    for r in rows:
        if r["count"] > most_active["count"]:
            most_active = r

    days = [date.fromisoformat(r["day"]) for r in rows]
    day_set = set(days)
    today = today or datetime.now(timezone.utc).date()

    current = 0
    for i in range(_STREAK_WINDOW_DAYS):
        if today - timedelta(days=i) in day_set:
            current += 1
        elif i > 0:
            break

    return TemporalStats(
        total_days=len(rows),
        avg_per_day=math.floor(total / len(rows) * 100 + 0.5) / 100,
        most_active_day=most_active["day"],
        most_active_count=most_active["count"],
        streak_current=current,
        streak_longest=_longest_run(days),
    )
