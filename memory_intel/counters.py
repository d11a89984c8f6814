"""Durable observability counters with Prometheus text exposition.

Counters live in the ``observability_counters`` table so they survive
process restarts. Increment is the only mutation other components perform;
:meth:`Counters.reset` exists for administrative use only.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Dict, List, Optional

from .storage import MemoryStorage

logger = logging.getLogger(__name__)

# Well-known keys
DEDUP_MATCHED = "memory.dedup_matched"
DEDUP_SKIPPED = "memory.dedup_skipped"
SEARCH_METADATA_EXCLUDED = "search.metadata_excluded"
SEARCH_METADATA_PENALIZED = "search.metadata_penalized"
SEARCH_EMBEDDING_FAILURES = "search.embedding_failures"
REGRESSION_RUNS = "retrieval_regression.runs"
REGRESSION_QUERIES = "retrieval_regression.queries"
REGRESSION_INITIALIZED = "retrieval_regression.initialized_queries"
REGRESSION_ALERTS = "retrieval_regression.alerts"
REGRESSION_ALERT_MEMORIES = "retrieval_regression.alert_memories"

_METRIC_NAME_RE = re.compile(r"[^a-zA-Z0-9_]")


class Counters:
    """Named integer counters persisted in SQLite."""

    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def increment(self, key: str, delta: int = 1) -> int:
        """Add *delta* (>= 0) to *key*; returns the new value.

        A zero delta is a no-op that still returns the current value.
        """
        if not key:
            raise ValueError("counter key must not be empty")
        delta = int(delta)
        if delta < 0:
            raise ValueError("counters only increase; use reset() for administrative resets")
        if delta == 0:
            return self.get(key)

        with self.storage.transaction() as conn:
            conn.execute(
                """INSERT INTO observability_counters (key, value, updated_at)
                   VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = value + excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, delta, time.time()),
            )
            value = conn.execute(
                "SELECT value FROM observability_counters WHERE key = ?", (key,)
            ).fetchone()["value"]

        if self.storage.get_bool_setting("observability.log_events", False):
            logger.info("counter %s += %d -> %d", key, delta, value)
        return value

    def get(self, key: str) -> int:
        conn = self.storage._get_conn()
        row = conn.execute(
            "SELECT value FROM observability_counters WHERE key = ?", (key,)
        ).fetchone()
        return int(row["value"]) if row else 0

    def get_all(self, prefix: Optional[str] = None) -> Dict[str, int]:
        conn = self.storage._get_conn()
        if prefix:
            rows = conn.execute(
                """SELECT key, value FROM observability_counters
                   WHERE substr(key, 1, ?) = ? ORDER BY key""",
                (len(prefix), prefix),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT key, value FROM observability_counters ORDER BY key"
            ).fetchall()
        return {r["key"]: int(r["value"]) for r in rows}

    def reset(self, key: Optional[str] = None) -> int:
        """Administrative reset of one counter (or all). Returns rows removed."""
        with self.storage.transaction() as conn:
            if key is None:
                cur = conn.execute("DELETE FROM observability_counters")
            else:
                cur = conn.execute("DELETE FROM observability_counters WHERE key = ?", (key,))
        logger.warning("Counters reset: %s (%d removed)", key or "<all>", cur.rowcount)
        return cur.rowcount

    def render_prometheus(self, namespace: str = "memory_intel") -> str:
        """Render every counter in Prometheus exposition format (text/plain)."""
        lines: List[str] = []
        for key, value in self.get_all().items():
            name = f"{namespace}_{_metric_name(key)}_total"
            lines.append(f"# HELP {name} Durable counter {_help_escape(key)}.")
            lines.append(f"# TYPE {name} counter")
            lines.append(f"{name} {int(value)}")
        return "\n".join(lines) + "\n" if lines else ""


def _metric_name(key: str) -> str:
    return _METRIC_NAME_RE.sub("_", key)


def _help_escape(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n")
