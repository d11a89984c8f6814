"""Hybrid search.

Four signals per candidate memory:
1. **Semantic**  - cosine similarity of query and memory embeddings
2. **Keyword**   - query-token coverage of the memory content
3. **Recency**   - exponential decay over days since ``created_at``,
   slowed for important memories
4. **Frequency** - log-normalized ``access_count`` blended with ``importance``

Candidates are pooled from sqlite-vec KNN, FTS5 matches and the most recent
memories that pass the filters, then fused either linearly (weighted sum,
default) or by Reciprocal Rank Fusion over the per-signal rankings:
    ``score = Σ weight_i / (k + rank_i)``  where k = 60

Weights, decay and fusion mode are read from the ``scoring.*`` settings at
query time so they can be tuned per install without a restart.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Set

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator

from . import counters as ctr
from .canonical import normalize_tags, parse_tag_alias_map
from .config import Config, load_config
from .counters import Counters
from .embeddings import EmbeddingProvider
from .storage import MemoryFilter, MemoryStorage

logger = logging.getLogger(__name__)

MAX_LIMIT = 50
METADATA_MODES = ("include", "exclude", "penalize")


def normalize_query(text: str) -> str:
    """Normalize query text.

    - lowercase, strip
    - collapse whitespace
    - remove trailing punctuation
    """
    t = text.lower().strip()
    t = re.sub(r"\s+", " ", t)
    t = re.sub(r"[?!.,;:]+$", "", t)
    return t.strip()


def _tokenize(text: str) -> Set[str]:
    """Alnum tokens of length >= 3."""
    toks = re.findall(r"\w+", (text or "").lower(), re.UNICODE)
    return {t for t in toks if len(t) >= 3}


def _lexical_overlap(query: str, text: str) -> float:
    """Query coverage score in [0, 1]."""
    q = _tokenize(query)
    if not q:
        return 0.0
    d = _tokenize((text or "")[:4000])
    if not d:
        return 0.0
    return len(q & d) / len(q)


def _recency_score(created_at: float, importance: float, decay: float, now: float) -> float:
    """``exp(-decay * (1 - 0.5 * importance) * days_old)``."""
    days_old = max(0.0, (now - created_at) / 86400.0)
    return math.exp(-decay * (1.0 - 0.5 * importance) * days_old)


def _frequency_score(access_count: int, max_access: int, importance: float) -> float:
    access = math.log1p(access_count) / math.log1p(max_access) if max_access > 0 else 0.0
    return 0.5 * access + 0.5 * importance


def _cosine(a: np.ndarray, b: np.ndarray) -> float:
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


def _rrf_fuse(
    ranked_lists: List[List[str]],
    weights: List[float],
    k: int = 60,
) -> Dict[str, float]:
    """Reciprocal Rank Fusion across multiple ranked ID lists.

    ``score(d) = Σ weight_i / (k + rank_i(d))``
    """
    scores: Dict[str, float] = {}
    for ids, weight in zip(ranked_lists, weights):
        for rank, doc_id in enumerate(ids, start=1):
            scores[doc_id] = scores.get(doc_id, 0.0) + weight / (k + rank)
    return scores


class SearchFilters(BaseModel):
    """Validated search parameters."""

    tags: List[str] = Field(default_factory=list)
    content_type: Optional[Literal["text", "conversation", "note", "summary"]] = None
    after: Optional[datetime] = None
    before: Optional[datetime] = None
    limit: int = Field(default=10, ge=1)
    min_score: float = 0.0
    metadata_mode: Optional[Literal["include", "exclude", "penalize"]] = None

    @field_validator("limit")
    @classmethod
    def _cap_limit(cls, v: int) -> int:
        return min(v, MAX_LIMIT)

    @field_validator("after", "before")
    @classmethod
    def _as_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @model_validator(mode="after")
    def _check_range(self) -> "SearchFilters":
        if self.after and self.before and self.after > self.before:
            raise ValueError("'after' must not be later than 'before'")
        return self


@dataclass
class SearchWeights:
    """Weights of each signal in the fused score."""
    semantic: float = 0.50
    keyword: float = 0.25
    recency: float = 0.15
    frequency: float = 0.10
    recency_decay: float = 0.05
    fusion: str = "linear"
    rrf_k: int = 60

    @classmethod
    def from_storage(cls, storage: MemoryStorage, cfg: Optional[Config] = None) -> "SearchWeights":
        cfg = cfg or load_config()

        def _weight(key: str, default: float) -> float:
            value = storage.get_float_setting(key, default)
            if value < 0 or not math.isfinite(value):
                logger.warning("Setting %s=%s out of range; using %s", key, value, default)
                return default
            return value

        fusion = (storage.get_setting("scoring.fusion") or "linear").strip().lower()
        if fusion not in ("linear", "rrf"):
            logger.warning("Unknown scoring.fusion %r; using linear", fusion)
            fusion = "linear"
        rrf_k = storage.get_int_setting("scoring.rrf_k", 60)
        return cls(
            semantic=_weight("scoring.semantic_weight", cfg.weight_semantic),
            keyword=_weight("scoring.keyword_weight", cfg.weight_keyword),
            recency=_weight("scoring.recency_weight", cfg.weight_recency),
            frequency=_weight("scoring.frequency_weight", cfg.weight_frequency),
            recency_decay=_weight("scoring.recency_decay", 0.05),
            fusion=fusion,
            rrf_k=rrf_k if rrf_k > 0 else 60,
        )


@dataclass
class SearchResult:
    """A single search result with its per-signal breakdown."""
    id: str
    content: str
    content_type: str
    importance: float
    created_at: float
    access_count: int = 0
    source: Optional[str] = None
    is_metadata: bool = False
    tags: List[str] = field(default_factory=list)
    score: float = 0.0
    semantic_score: float = 0.0
    keyword_score: float = 0.0
    recency_score: float = 0.0
    frequency_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "content_type": self.content_type,
            "importance": self.importance,
            "created_at": self.created_at,
            "access_count": self.access_count,
            "source": self.source,
            "is_metadata": self.is_metadata,
            "tags": list(self.tags),
            "score": round(self.score, 6),
            "semantic_score": round(self.semantic_score, 4),
            "keyword_score": round(self.keyword_score, 4),
            "recency_score": round(self.recency_score, 4),
            "frequency_score": round(self.frequency_score, 4),
        }


class HybridSearch:
    """Four-signal hybrid search engine."""

    def __init__(
        self,
        storage: MemoryStorage,
        embedder: Optional[EmbeddingProvider] = None,
        counters: Optional[Counters] = None,
        config: Optional[Config] = None,
    ) -> None:
        self.storage = storage
        self.embedder = embedder
        self.counters = counters or Counters(storage)
        self.config = config or load_config()
        self._access_tasks: Set[asyncio.Task] = set()
        # Graceful degradation: "full" or "keyword_only"
        self.last_search_mode: str = "full"

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def _metadata_mode(self, override: Optional[str]) -> str:
        if override:
            return override
        mode = (self.storage.get_setting("search.metadata_mode") or "include").strip().lower()
        if mode not in METADATA_MODES:
            logger.warning("Unknown search.metadata_mode %r; using include", mode)
            return "include"
        return mode

    def _metadata_penalty(self) -> float:
        penalty = self.storage.get_float_setting("search.metadata_penalty", 0.5)
        if not 0.0 < penalty < 1.0:
            logger.warning("search.metadata_penalty=%s outside (0, 1); using 0.5", penalty)
            return 0.5
        return penalty

    # ------------------------------------------------------------------
    # Access recording (best effort, never awaited by search)
    # ------------------------------------------------------------------

    def _schedule_access(self, memory_ids: List[str], query: str) -> None:
        if not memory_ids:
            return
        task = asyncio.create_task(self._record_access(memory_ids, query))
        self._access_tasks.add(task)
        task.add_done_callback(self._access_tasks.discard)

    async def _record_access(self, memory_ids: List[str], query: str) -> None:
        try:
            self.storage.record_access(memory_ids, query)
        except Exception as exc:
            logger.debug("Access recording skipped: %s", exc)

    async def drain(self) -> None:
        """Wait for pending access-recording tasks (shutdown and tests)."""
        if self._access_tasks:
            await asyncio.gather(*list(self._access_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def _query_embedding(self, q_norm: str) -> Optional[np.ndarray]:
        if self.embedder is None:
            return None
        try:
            vec = await self.embedder.embed(q_norm)
        except Exception as exc:
            logger.warning("Semantic search failed (keyword fallback): %s", exc)
            self.counters.increment(ctr.SEARCH_EMBEDDING_FAILURES)
            return None
        if len(vec) != self.storage.dimensions:
            logger.warning(
                "Query embedding has %d dimensions, store expects %d; skipping semantic signal",
                len(vec), self.storage.dimensions,
            )
            return None
        return np.asarray(vec, dtype=np.float32)

    def _passes_filters(
        self,
        mem: Dict[str, Any],
        filters: SearchFilters,
        tag_filter: Set[str],
    ) -> bool:
        if not mem["is_active"]:
            return False
        if filters.content_type and mem["content_type"] != filters.content_type:
            return False
        if filters.after and mem["created_at"] < filters.after.timestamp():
            return False
        if filters.before and mem["created_at"] > filters.before.timestamp():
            return False
        if tag_filter and not tag_filter.intersection(mem["tags"]):
            return False
        return True

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        record_access: bool = True,
        observe: bool = True,
    ) -> List[SearchResult]:
        """Run hybrid search and return fused, ranked results.

        Graceful degradation: if the embedding provider is unavailable the
        keyword, recency and frequency signals still rank the candidates.
        Filters are applied inside every candidate query, so a narrow filter
        never loses its matches to a crowd of newer or closer memories.
        With ``observe=False`` the metadata exclude/penalize counters are
        left untouched (internal runs such as retrieval regression).
        """
        filters = filters or SearchFilters()
        q_norm = normalize_query(query)
        if not q_norm:
            raise ValueError("query must not be empty")

        weights = SearchWeights.from_storage(self.storage, self.config)
        mode = self._metadata_mode(filters.metadata_mode)
        alias_map = parse_tag_alias_map(self.storage.get_setting("tags.alias_map"))
        tag_filter = set(normalize_tags(filters.tags, alias_map))
        candidate_limit = max(filters.limit * 4, 20)

        # Collect candidates ----------------------------------------------
        self.last_search_mode = "full"
        query_vec = await self._query_embedding(q_norm)
        if query_vec is None and self.embedder is not None:
            self.last_search_mode = "keyword_only"

        flt = MemoryFilter(
            content_type=filters.content_type,
            after=filters.after.timestamp() if filters.after else None,
            before=filters.before.timestamp() if filters.before else None,
            tags=sorted(tag_filter),
            is_metadata=False if mode == "exclude" else None,
        )
        candidate_ids: List[str] = []
        if query_vec is not None:
            candidate_ids.extend(
                mid for mid, _ in self.storage.search_vectors(query_vec, candidate_limit, flt)
            )
        candidate_ids.extend(mid for mid, _ in self.storage.search_text(q_norm, candidate_limit, flt))
        candidate_ids.extend(self.storage.recent_memory_ids(candidate_limit, flt))

        memories = self.storage.get_memories(list(dict.fromkeys(candidate_ids)))
        candidates = {
            mid: mem for mid, mem in memories.items()
            if self._passes_filters(mem, filters, tag_filter)
            and not (mode == "exclude" and mem["is_metadata"])
        }

        excluded = 0
        if mode == "exclude":
            # metadata memories that the other filters would have admitted
            excluded = self.storage.count_memories(replace(flt, is_metadata=True))
            if excluded and observe:
                self.counters.increment(ctr.SEARCH_METADATA_EXCLUDED)

        if not candidates:
            return []

        # Signals ----------------------------------------------------------
        now = time.time()
        embeddings = self.storage.get_embeddings(list(candidates)) if query_vec is not None else {}
        max_access = max(int(m["access_count"]) for m in candidates.values())

        results: Dict[str, SearchResult] = {}
        for mid, mem in candidates.items():
            importance = float(mem["importance"])
            vec = embeddings.get(mid)
            results[mid] = SearchResult(
                id=mid,
                content=mem["content"],
                content_type=mem["content_type"],
                importance=importance,
                created_at=float(mem["created_at"]),
                access_count=int(mem["access_count"]),
                source=mem.get("source"),
                is_metadata=mem["is_metadata"],
                tags=list(mem["tags"]),
                semantic_score=max(0.0, _cosine(query_vec, vec)) if vec is not None else 0.0,
                keyword_score=_lexical_overlap(q_norm, mem["content"]),
                recency_score=_recency_score(
                    float(mem["created_at"]), importance, weights.recency_decay, now
                ),
                frequency_score=_frequency_score(int(mem["access_count"]), max_access, importance),
            )

        # Fusion -----------------------------------------------------------
        if weights.fusion == "rrf":
            signals = [
                ("semantic_score", weights.semantic),
                ("keyword_score", weights.keyword),
                ("recency_score", weights.recency),
                ("frequency_score", weights.frequency),
            ]
            ranked_lists: List[List[str]] = []
            weights_list: List[float] = []
            for attr, weight in signals:
                scored = [r for r in results.values() if getattr(r, attr) > 0]
                if not scored:
                    continue
                scored.sort(key=lambda r: (-getattr(r, attr), -r.created_at, r.id))
                ranked_lists.append([r.id for r in scored])
                weights_list.append(weight)
            fused = _rrf_fuse(ranked_lists, weights_list, k=weights.rrf_k)
            for mid, r in results.items():
                r.score = fused.get(mid, 0.0)
        else:
            for r in results.values():
                r.score = (
                    weights.semantic * r.semantic_score
                    + weights.keyword * r.keyword_score
                    + weights.recency * r.recency_score
                    + weights.frequency * r.frequency_score
                )

        if mode == "penalize":
            penalty = self._metadata_penalty()
            penalized = 0
            for r in results.values():
                if r.is_metadata:
                    r.score *= penalty
                    penalized += 1
            if penalized and observe:
                self.counters.increment(ctr.SEARCH_METADATA_PENALIZED)

        ranked = sorted(
            (r for r in results.values() if r.score >= filters.min_score),
            key=lambda r: (-r.score, -r.created_at, r.id),
        )[: filters.limit]

        if record_access:
            self._schedule_access([r.id for r in ranked], query)

        logger.debug(
            "search q=%r mode=%s fusion=%s candidates=%d excluded=%d returned=%d",
            q_norm, self.last_search_mode, weights.fusion, len(candidates), excluded, len(ranked),
        )
        return ranked
