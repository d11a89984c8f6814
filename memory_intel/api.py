"""FastAPI HTTP API for the memory intelligence layer.

Endpoints:
    POST   /v1/memories                -- Ingest one memory (canonicalize, embed, store)
    POST   /v1/search                  -- Hybrid search
    POST   /v1/backfill                -- Canonical backfill (hash, tags, metadata flag)
    POST   /v1/reembed                 -- Embed memories stored without a vector
    POST   /v1/entities/densify        -- Infer co-occurrence relationships
    GET    /v1/entities/{id}/related   -- Neighbours of an entity
    POST   /v1/consolidate             -- Cluster and consolidate (dry_run lists clusters)
    GET    /v1/consolidations          -- Consolidation history
    GET    /v1/timeline                -- Per-day memory counts
    GET    /v1/timeline/stats          -- Activity statistics and streaks
    GET    /v1/regression/queries      -- Golden query set
    PUT    /v1/regression/queries      -- Replace the golden query set
    POST   /v1/regression/run          -- Run retrieval regression
    GET    /v1/regression/runs         -- Run history
    POST   /v1/regression/compare      -- Compare current results against a stored run
    POST   /v1/regression/promote      -- Promote a run's results to baseline
    POST   /v1/regression/reset        -- Drop baselines
    GET    /v1/counters                -- Observability counters
    POST   /v1/counters/reset          -- Reset counters (administrative)
    GET    /v1/stats                   -- Database statistics
    GET    /v1/health                  -- Health check
    GET    /metrics                    -- Prometheus exposition of counters

Run: ``python -m memory_intel.api``
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import JSONResponse

from .backfill import backfill_canonical, reembed_missing
from .config import Config, load_config
from .consolidation import get_consolidations, run_consolidation
from .counters import Counters
from .embeddings import EmbeddingProvider, OpenRouterEmbeddings
from .entities import KnowledgeGraph
from .ingest import ingest_memory
from .pool import StoragePool
from .regression import GoldenQuery, RegressionHarness, RunNotFoundError
from .search import HybridSearch, SearchFilters
from .storage import MemoryStorage
from .temporal import get_temporal_stats, get_timeline

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared state (initialised in lifespan)
# ---------------------------------------------------------------------------

_storage_pool: Optional[StoragePool] = None
_embedder: Optional[EmbeddingProvider] = None
_config: Optional[Config] = None
_start_time: float = 0.0

_search_cache: Dict[str, HybridSearch] = {}


def _get_storage() -> MemoryStorage:
    if _storage_pool is None:
        raise HTTPException(503, "Storage pool not initialised")
    return _storage_pool.get()


def _get_search() -> HybridSearch:
    """Get or create the HybridSearch bound to the default store."""
    storage = _get_storage()
    key = storage.db_path
    if key not in _search_cache:
        _search_cache[key] = HybridSearch(
            storage=storage,
            embedder=_embedder,
            counters=Counters(storage),
            config=_config,
        )
    return _search_cache[key]


def _get_harness() -> RegressionHarness:
    return RegressionHarness(_get_search())


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown logic."""
    global _storage_pool, _embedder, _config, _start_time

    _config = load_config()
    errors = _config.validate()
    if errors:
        logger.warning("Config validation warnings: %s", errors)

    _storage_pool = StoragePool(
        default_path=_config.db_path,
        dimensions=_config.embedding_dimensions,
        busy_timeout_ms=_config.busy_timeout_ms,
    )
    # Pre-open the default store so the schema exists before the first request
    _storage_pool.get()

    if _config.openrouter_api_key:
        _embedder = OpenRouterEmbeddings(
            api_key=_config.openrouter_api_key,
            model=_config.embedding_model,
            dimensions=_config.embedding_dimensions,
            base_url=_config.openrouter_base_url,
            max_retries=_config.embed_max_retries,
            cache_size=_config.embed_cache_size,
        )
    else:
        logger.warning("No OPENROUTER_API_KEY -- semantic search disabled")
        _embedder = None

    _start_time = time.time()
    logger.info(
        "Memory API ready -- db=%s dims=%d model=%s",
        _config.db_path, _config.embedding_dimensions, _config.embedding_model,
    )

    yield

    for search in _search_cache.values():
        await search.drain()
    _search_cache.clear()
    _storage_pool.close_all()


app = FastAPI(
    title="Memory Intelligence API",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Centralized error handling ---

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request, exc):
    logger.warning("HTTP %d: %s (path=%s)", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail), "status_code": exc.status_code},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request, exc):
    logger.warning("Validation error: %s (path=%s)", str(exc)[:200], request.url.path)
    return JSONResponse(
        status_code=422,
        content={"error": "Validation error", "detail": exc.errors()},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request, exc):
    logger.warning("Bad request: %s (path=%s)", exc, request.url.path)
    return JSONResponse(status_code=400, content={"error": str(exc), "status_code": 400})


@app.exception_handler(RunNotFoundError)
async def not_found_handler(request, exc):
    return JSONResponse(status_code=404, content={"error": str(exc), "status_code": 404})


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.exception("Unhandled error: %s (path=%s)", exc, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class IngestRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)
    content_type: str = "text"
    source: Optional[str] = None
    importance: float = Field(default=0.5, ge=0.0, le=1.0)
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None
    is_metadata: Optional[bool] = None


class SearchRequest(SearchFilters):
    query: str = Field(..., min_length=1, max_length=2000)


class BackfillRequest(BaseModel):
    limit: int = Field(default=10000, ge=1)
    dry_run: bool = False


class ReembedRequest(BaseModel):
    limit: int = Field(default=500, ge=1)
    dry_run: bool = False


class DensifyRequest(BaseModel):
    min_co_occurrences: int = Field(default=2, ge=1)
    limit: int = Field(default=500, ge=1)
    dry_run: bool = False


class ConsolidateRequest(BaseModel):
    min_similarity: float = Field(default=0.75, ge=-1.0, le=1.0)
    min_cluster_size: int = Field(default=3, ge=2)
    max_memories: int = Field(default=500, ge=1)
    dry_run: bool = False


class GoldenQueriesRequest(BaseModel):
    queries: List[Union[str, GoldenQuery]]


class RegressionRunRequest(BaseModel):
    queries: Optional[List[Union[str, GoldenQuery]]] = None
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    min_overlap_at_10: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_avg_rank_shift: Optional[float] = Field(default=None, ge=0.0)
    update_baselines: bool = False
    include_metadata: bool = False
    create_alert_memory: Optional[bool] = None


class CompareRequest(BaseModel):
    run_id: str = Field(..., min_length=1)
    limit: Optional[int] = Field(default=None, ge=1, le=50)
    include_metadata: bool = False


class PromoteRequest(BaseModel):
    run_id: str = Field(..., min_length=1)
    queries: Optional[List[str]] = None


class ResetBaselinesRequest(BaseModel):
    queries: Optional[List[str]] = None


class CounterResetRequest(BaseModel):
    key: Optional[str] = None


# ---------------------------------------------------------------------------
# Memories and search
# ---------------------------------------------------------------------------

@app.post("/v1/memories")
async def ingest(req: IngestRequest) -> Dict[str, Any]:
    """Store one memory; duplicates are observed (or reused, per settings)."""
    storage = _get_storage()
    result = await ingest_memory(
        storage,
        _embedder,
        req.content,
        content_type=req.content_type,
        source=req.source,
        importance=req.importance,
        tags=req.tags,
        metadata=req.metadata,
        is_metadata=req.is_metadata,
        counters=_get_search().counters,
    )
    return result.to_dict()


@app.post("/v1/search")
async def search(req: SearchRequest) -> Dict[str, Any]:
    engine = _get_search()
    filters = SearchFilters(**req.model_dump(exclude={"query"}))
    results = await engine.search(req.query, filters)
    return {
        "query": req.query,
        "mode": engine.last_search_mode,
        "results": [r.to_dict() for r in results],
    }


@app.post("/v1/backfill")
async def backfill(req: BackfillRequest) -> Dict[str, Any]:
    return backfill_canonical(_get_storage(), limit=req.limit, dry_run=req.dry_run).to_dict()


@app.post("/v1/reembed")
async def reembed(req: ReembedRequest) -> Dict[str, Any]:
    if _embedder is None and not req.dry_run:
        raise HTTPException(503, "Embedding provider not configured")
    return await reembed_missing(_get_storage(), _embedder, limit=req.limit, dry_run=req.dry_run)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

@app.post("/v1/entities/densify")
async def densify(req: DensifyRequest) -> Dict[str, Any]:
    kg = KnowledgeGraph(_get_storage())
    return kg.densify(req.min_co_occurrences, req.limit, req.dry_run).to_dict()


@app.get("/v1/entities/{entity_id}/related")
async def related(entity_id: str) -> Dict[str, Any]:
    storage = _get_storage()
    if storage.get_entity(entity_id) is None:
        raise HTTPException(404, f"Entity {entity_id} not found")
    return {"entity_id": entity_id, "related": KnowledgeGraph(storage).get_related(entity_id)}


# ---------------------------------------------------------------------------
# Consolidation
# ---------------------------------------------------------------------------

@app.post("/v1/consolidate")
async def consolidate(req: ConsolidateRequest) -> Dict[str, Any]:
    """Find similar clusters; unless dry_run, merge each under a summary."""
    return await run_consolidation(
        _get_storage(),
        _embedder,
        min_similarity=req.min_similarity,
        min_cluster_size=req.min_cluster_size,
        max_memories=req.max_memories,
        dry_run=req.dry_run,
    )


@app.get("/v1/consolidations")
async def consolidations(limit: int = Query(default=20, ge=1, le=200)) -> Dict[str, Any]:
    return {"consolidations": get_consolidations(_get_storage(), limit)}


# ---------------------------------------------------------------------------
# Temporal analytics
# ---------------------------------------------------------------------------

@app.get("/v1/timeline")
async def timeline(
    after: Optional[str] = Query(default=None),
    before: Optional[str] = Query(default=None),
    limit: int = Query(default=30, ge=1, le=366),
    include_memories: bool = Query(default=False),
) -> Dict[str, Any]:
    entries = get_timeline(_get_storage(), after, before, limit, include_memories)
    return {"timeline": [e.to_dict() for e in entries]}


@app.get("/v1/timeline/stats")
async def timeline_stats() -> Dict[str, Any]:
    return get_temporal_stats(_get_storage()).to_dict()


# ---------------------------------------------------------------------------
# Retrieval regression
# ---------------------------------------------------------------------------

@app.get("/v1/regression/queries")
async def golden_queries() -> Dict[str, Any]:
    return {"queries": [q.model_dump() for q in _get_harness().get_golden_queries()]}


@app.put("/v1/regression/queries")
async def set_golden_queries(req: GoldenQueriesRequest) -> Dict[str, Any]:
    saved = _get_harness().set_golden_queries(req.queries)
    return {"queries": [q.model_dump() for q in saved]}


@app.post("/v1/regression/run")
async def regression_run(req: RegressionRunRequest) -> Dict[str, Any]:
    result = await _get_harness().run(
        queries=req.queries,
        limit=req.limit,
        min_overlap=req.min_overlap_at_10,
        max_avg_shift=req.max_avg_rank_shift,
        update_baselines=req.update_baselines,
        include_metadata=req.include_metadata,
        create_alert_memory=req.create_alert_memory,
    )
    return result.to_dict()


@app.get("/v1/regression/runs")
async def regression_runs(limit: int = Query(default=20, ge=1, le=200)) -> Dict[str, Any]:
    return {"runs": _get_harness().list_runs(limit)}


@app.post("/v1/regression/compare")
async def regression_compare(req: CompareRequest) -> Dict[str, Any]:
    result = await _get_harness().compare_against_run(
        req.run_id, limit=req.limit, include_metadata=req.include_metadata,
    )
    return result.to_dict()


@app.post("/v1/regression/promote")
async def regression_promote(req: PromoteRequest) -> Dict[str, Any]:
    return _get_harness().promote_baselines_from_run(req.run_id, req.queries)


@app.post("/v1/regression/reset")
async def regression_reset(req: ResetBaselinesRequest) -> Dict[str, Any]:
    return _get_harness().reset_baselines(req.queries)


# ---------------------------------------------------------------------------
# Observability
# ---------------------------------------------------------------------------

@app.get("/v1/counters")
async def counters(prefix: Optional[str] = Query(default=None)) -> Dict[str, Any]:
    return {"counters": _get_search().counters.get_all(prefix)}


@app.post("/v1/counters/reset")
async def counters_reset(req: CounterResetRequest) -> Dict[str, Any]:
    return {"reset": _get_search().counters.reset(req.key)}


@app.get("/metrics", response_class=PlainTextResponse)
async def metrics() -> str:
    return _get_search().counters.render_prometheus()


@app.get("/v1/stats")
async def stats() -> Dict[str, Any]:
    return _get_storage().stats()


@app.get("/v1/health")
async def health() -> Dict[str, Any]:
    """Storage probe plus embedding availability; never raises."""
    storage_ok = False
    if _storage_pool is not None:
        try:
            _storage_pool.get().stats()
            storage_ok = True
        except Exception as exc:
            logger.warning("Health storage probe failed: %s", exc)
    status = "ok" if storage_ok and _embedder is not None else ("degraded" if storage_ok else "down")
    return {
        "status": status,
        "checks": {"storage": storage_ok, "embedding": _embedder is not None},
        "uptime_seconds": round(time.time() - _start_time, 1),
    }


# ---------------------------------------------------------------------------
# CLI entry-point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run the API server via uvicorn."""
    import uvicorn

    cfg = load_config()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    logger.info("Starting Memory Intelligence API on %s:%d", cfg.api_host, cfg.api_port)
    uvicorn.run(
        "memory_intel.api:app",
        host=cfg.api_host,
        port=cfg.api_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
