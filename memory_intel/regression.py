"""Retrieval regression harness.

Golden queries are replayed through :class:`~memory_intel.search.HybridSearch`
and their top-K ids compared with a stored baseline:

* ``overlap_at_10``  - share of the baseline ids still in the current top-K
* ``avg_rank_shift`` - mean absolute position change of the shared ids

An alert fires when overlap drops below ``min_overlap_at_10`` or the shift
exceeds ``max_avg_rank_shift``. A query without a baseline is initialized
from the current run and never alerts. Every run is stored as a snapshot so
later runs can be compared against it or promoted to baseline.

Regression searches never record access or bump the search counters, so
measuring does not perturb the signals being measured.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator
from ulid import ULID

from . import counters as ctr
from .counters import Counters
from .ingest import ingest_memory
from .search import MAX_LIMIT, HybridSearch, SearchFilters

logger = logging.getLogger(__name__)

ALERT_TAGS = ["retrieval-regression", "alert"]
ALERT_IMPORTANCE = 0.2


class RunNotFoundError(LookupError):
    """No regression snapshot exists for the requested run id."""


class GoldenQuery(BaseModel):
    query: str
    tags: List[str] = Field(default_factory=list)
    content_type: Optional[Literal["text", "conversation", "note", "summary"]] = None
    include_metadata: Optional[bool] = None

    @field_validator("query")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()


_GOLDEN_LIST = TypeAdapter(List[Union[str, GoldenQuery]])


def _normalize_queries(raw: Sequence[Union[str, GoldenQuery, Dict[str, Any]]]) -> List[GoldenQuery]:
    out: List[GoldenQuery] = []
    for item in _GOLDEN_LIST.validate_python(list(raw)):
        gq = GoldenQuery(query=item) if isinstance(item, str) else item
        gq.tags = [t.strip() for t in gq.tags if t.strip()]
        if gq.query:
            out.append(gq)
    return out


@dataclass
class Thresholds:
    limit: int = 10
    min_overlap: float = 0.80
    max_avg_shift: float = 3.0


@dataclass
class QueryComparison:
    query: str
    baseline_ids: List[str]
    current_ids: List[str]
    overlap_at_10: float
    avg_rank_shift: float
    exact_order: bool
    alert: bool
    initialized: bool = False


@dataclass
class RegressionResult:
    run_id: Optional[str]
    ran: int
    initialized: int
    alerts: int
    limit: int
    min_overlap_at_10: float
    max_avg_rank_shift: float
    results: List[QueryComparison] = field(default_factory=list)
    alert_memory_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_overlap_at_k(
    baseline: Sequence[str],
    current: Sequence[str],
    k: int,
) -> Tuple[float, float, bool]:
    """Return ``(overlap, avg_rank_shift, exact_order)`` for the top *k* ids.

    With an empty baseline nothing can have been lost: overlap 1, shift 0.
    With no shared ids the shift is *k*.
    """
    b = list(baseline[:k])
    c = list(current[:k])
    exact = b == c
    if not b:
        return 1.0, 0.0, exact

    c_pos = {mid: i for i, mid in enumerate(c)}
    shared = [(i, c_pos[mid]) for i, mid in enumerate(b) if mid in c_pos]
    overlap = len(shared) / len(b)
    if not shared:
        return overlap, float(k), exact
    shift = sum(abs(i - j) for i, j in shared) / len(shared)
    return overlap, shift, exact


class RegressionHarness:
    """Golden-query management and regression runs for one store."""

    def __init__(self, search: HybridSearch, counters: Optional[Counters] = None) -> None:
        self.search = search
        self.storage = search.storage
        self.counters = counters or search.counters

    # ------------------------------------------------------------------
    # Golden queries and thresholds
    # ------------------------------------------------------------------

    def get_golden_queries(self) -> List[GoldenQuery]:
        """Configured golden queries; a malformed setting raises ValueError."""
        raw = self.storage.get_setting("retrieval_regression.queries")
        if not raw:
            return []
        try:
            parsed = json.loads(raw)
            return _normalize_queries(parsed if isinstance(parsed, list) else [parsed])
        except (ValueError, ValidationError) as exc:
            raise ValueError(f"retrieval_regression.queries is malformed: {exc}") from exc

    def set_golden_queries(self, queries: Sequence[Union[str, GoldenQuery, Dict[str, Any]]]) -> List[GoldenQuery]:
        normalized = _normalize_queries(queries)
        self.storage.set_setting(
            "retrieval_regression.queries",
            json.dumps([q.model_dump(exclude_none=True) for q in normalized]),
        )
        return normalized

    def thresholds(
        self,
        limit: Optional[int] = None,
        min_overlap: Optional[float] = None,
        max_avg_shift: Optional[float] = None,
    ) -> Thresholds:
        t = Thresholds(
            limit=limit if limit is not None else self.storage.get_int_setting("retrieval_regression.limit", 10),
            min_overlap=(
                min_overlap if min_overlap is not None
                else self.storage.get_float_setting("retrieval_regression.min_overlap_at_10", 0.80)
            ),
            max_avg_shift=(
                max_avg_shift if max_avg_shift is not None
                else self.storage.get_float_setting("retrieval_regression.max_avg_rank_shift", 3.0)
            ),
        )
        if not 1 <= t.limit <= MAX_LIMIT:
            raise ValueError(f"limit must be in [1, {MAX_LIMIT}]")
        if not 0.0 <= t.min_overlap <= 1.0:
            raise ValueError("min_overlap_at_10 must be in [0, 1]")
        if t.max_avg_shift < 0:
            raise ValueError("max_avg_rank_shift must be >= 0")
        return t

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    async def _current_ids(self, gq: GoldenQuery, limit: int, include_metadata: bool) -> List[str]:
        include = gq.include_metadata if gq.include_metadata is not None else include_metadata
        filters = SearchFilters(
            tags=gq.tags,
            content_type=gq.content_type,
            limit=limit,
            metadata_mode="include" if include else "exclude",
        )
        results = await self.search.search(gq.query, filters, record_access=False, observe=False)
        return [r.id for r in results][:limit]

    def _compare(
        self, query: str, baseline: List[str], current: List[str], t: Thresholds
    ) -> QueryComparison:
        overlap, shift, exact = compute_overlap_at_k(baseline, current, t.limit)
        alert = overlap < t.min_overlap or shift > t.max_avg_shift
        return QueryComparison(query, baseline, current, overlap, shift, exact, alert)

    async def run(
        self,
        queries: Optional[Sequence[Union[str, GoldenQuery, Dict[str, Any]]]] = None,
        limit: Optional[int] = None,
        min_overlap: Optional[float] = None,
        max_avg_shift: Optional[float] = None,
        update_baselines: bool = False,
        include_metadata: bool = False,
        create_alert_memory: Optional[bool] = None,
    ) -> RegressionResult:
        """Replay golden queries against their baselines."""
        golden = _normalize_queries(queries) if queries is not None else self.get_golden_queries()
        t = self.thresholds(limit, min_overlap, max_avg_shift)
        if not golden:
            return RegressionResult(None, 0, 0, 0, t.limit, t.min_overlap, t.max_avg_shift)

        if create_alert_memory is None:
            create_alert_memory = self.storage.get_bool_setting(
                "retrieval_regression.create_alert_memory", True
            )

        run_id = str(ULID())
        now = time.time()
        # Every query runs before any baseline is written, so a failure
        # part-way through leaves the stored baselines untouched.
        observed = []
        for gq in golden:
            current = await self._current_ids(gq, t.limit, include_metadata)
            observed.append((gq, current, self.storage.get_baseline(gq.query)))

        results: List[QueryComparison] = []
        for gq, current, stored in observed:
            if stored is None:
                self.storage.set_baseline(gq.query, current)
                results.append(QueryComparison(gq.query, [], current, 1.0, 0.0, True, False, True))
                continue
            comparison = self._compare(gq.query, stored[: t.limit], current, t)
            if update_baselines:
                self.storage.set_baseline(gq.query, current)
            results.append(comparison)

        self.storage.insert_regression_runs([
            {**asdict(r), "run_id": run_id, "created_at": now} for r in results
        ])

        initialized = sum(1 for r in results if r.initialized)
        alerts = sum(1 for r in results if r.alert)
        summary = RegressionResult(
            run_id, len(results), initialized, alerts,
            t.limit, t.min_overlap, t.max_avg_shift, results,
        )

        self.counters.increment(ctr.REGRESSION_RUNS)
        self.counters.increment(ctr.REGRESSION_QUERIES, len(results))
        self.counters.increment(ctr.REGRESSION_INITIALIZED, initialized)
        self.counters.increment(ctr.REGRESSION_ALERTS, alerts)

        if alerts and create_alert_memory:
            summary.alert_memory_id = await self._write_alert_memory(summary, now)
            self.counters.increment(ctr.REGRESSION_ALERT_MEMORIES)

        log = logger.warning if alerts else logger.info
        log(
            "Retrieval regression %s: ran=%d initialized=%d alerts=%d",
            run_id, len(results), initialized, alerts,
        )
        return summary

    async def _write_alert_memory(self, summary: RegressionResult, now: float) -> str:
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
        lines = [
            f"Retrieval regression alerts ({stamp})",
            "",
            f"Run ID: {summary.run_id}",
            f"Thresholds: overlap@{summary.limit} >= {summary.min_overlap_at_10 * 100:.1f}% "
            f"and avg-rank-shift <= {summary.max_avg_rank_shift:.2f}",
            "",
        ]
        lines.extend(
            f"- {r.query}: overlap@{summary.limit}={r.overlap_at_10 * 100:.1f}%, "
            f"avg-rank-shift={r.avg_rank_shift:.2f}"
            for r in summary.results if r.alert
        )
        result = await ingest_memory(
            self.storage,
            None,
            "\n".join(lines),
            content_type="summary",
            source="retrieval-regression",
            importance=ALERT_IMPORTANCE,
            tags=ALERT_TAGS,
            metadata={
                "kind": "retrieval-regression-alert",
                "run_id": summary.run_id,
                "alerts": summary.alerts,
                "ran": summary.ran,
            },
            is_metadata=True,
            counters=self.counters,
        )
        return result.id

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def _run_rows(self, run_id: str) -> List[Dict[str, Any]]:
        rows = self.storage.get_regression_run(run_id)
        if not rows:
            raise RunNotFoundError(f"Run {run_id} not found")
        return rows

    async def compare_against_run(
        self,
        run_id: str,
        limit: Optional[int] = None,
        min_overlap: Optional[float] = None,
        max_avg_shift: Optional[float] = None,
        include_metadata: bool = False,
    ) -> RegressionResult:
        """Re-run the queries of a stored run and compare with its results."""
        rows = self._run_rows(run_id)
        t = self.thresholds(limit, min_overlap, max_avg_shift)
        configured = {gq.query: gq for gq in self.get_golden_queries()}

        results = []
        for row in rows:
            gq = configured.get(row["query"]) or GoldenQuery(query=row["query"])
            current = await self._current_ids(gq, t.limit, include_metadata)
            results.append(self._compare(row["query"], row["current_ids"][: t.limit], current, t))

        alerts = sum(1 for r in results if r.alert)
        return RegressionResult(
            run_id, len(results), 0, alerts, t.limit, t.min_overlap, t.max_avg_shift, results,
        )

    def promote_baselines_from_run(
        self, run_id: str, queries: Optional[Sequence[str]] = None
    ) -> Dict[str, Any]:
        """Make a stored run's results the baseline (optionally for some queries only)."""
        rows = self._run_rows(run_id)
        allowed = {q.strip() for q in queries or [] if q.strip()}
        targets = [r for r in rows if r["query"] in allowed] if allowed else rows
        for row in targets:
            self.storage.set_baseline(row["query"], row["current_ids"])
        return {"run_id": run_id, "promoted": len(targets), "queries": [r["query"] for r in targets]}

    def reset_baselines(self, queries: Optional[Sequence[str]] = None) -> Dict[str, Any]:
        """Drop baselines (all, or the named queries) so the next run re-initializes them."""
        if not queries:
            return {"removed": self.storage.delete_baselines(), "queries": []}
        normalized = [q.strip() for q in queries if q.strip()]
        if not normalized:
            return {"removed": 0, "queries": []}
        return {"removed": self.storage.delete_baselines(normalized), "queries": normalized}

    def list_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self.storage.list_regression_runs(limit)


async def run_retrieval_regression(search: HybridSearch, **kwargs: Any) -> RegressionResult:
    """Convenience wrapper around :meth:`RegressionHarness.run`."""
    return await RegressionHarness(search).run(**kwargs)
