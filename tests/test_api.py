"""Tests for the FastAPI HTTP API.

Uses httpx AsyncClient against the FastAPI app. We manually initialise
the module-level state that normally comes from the lifespan handler,
pointing it at a temp database so no real store is touched.
"""

from __future__ import annotations

import time

import pytest
from httpx import AsyncClient, ASGITransport

import memory_intel.api as api_module
from memory_intel.api import app
from memory_intel.config import Config
from memory_intel.pool import StoragePool


class _StubEmbedder:
    """Returns the same unit vector for every text."""

    def dimensions(self) -> int:
        return 4

    async def embed(self, text: str):
        return [0.5, 0.5, 0.5, 0.5]

    async def embed_batch(self, texts):
        return [[0.5, 0.5, 0.5, 0.5]] * len(texts)


@pytest.fixture(autouse=True)
def _init_api_state(tmp_path):
    """Wire the api module globals to a temp DB so every test starts clean."""
    pool = StoragePool(default_path=str(tmp_path / "api.sqlite"), dimensions=4)
    pool.get()

    api_module._storage_pool = pool
    api_module._embedder = _StubEmbedder()
    api_module._search_cache = {}
    api_module._config = Config(openrouter_api_key="test-key", embedding_dimensions=4)
    api_module._start_time = time.time()

    yield

    pool.close_all()
    api_module._storage_pool = None
    api_module._embedder = None
    api_module._search_cache = {}
    api_module._config = None


@pytest.fixture
async def client():
    """Create a test HTTP client against the FastAPI app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _drain():
    for search in api_module._search_cache.values():
        await search.drain()


# ---------------------------------------------------------------------------
# /v1/health and /v1/stats
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestHealth:
    async def test_health_ok(self, client):
        resp = await client.get("/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["checks"] == {"storage": True, "embedding": True}
        assert "uptime_seconds" in data

    async def test_degraded_without_embedder(self, client):
        api_module._embedder = None
        resp = await client.get("/v1/health")
        assert resp.json()["status"] == "degraded"

    async def test_down_without_pool(self, client):
        api_module._storage_pool.close_all()
        api_module._storage_pool = None
        resp = await client.get("/v1/health")
        assert resp.json()["status"] == "down"

    async def test_stats(self, client):
        await client.post("/v1/memories", json={"content": "stats probe"})
        data = (await client.get("/v1/stats")).json()
        assert data["total_memories"] == 1
        assert data["with_embedding"] == 1


# ---------------------------------------------------------------------------
# Ingest and search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestMemories:
    async def test_ingest(self, client):
        resp = await client.post(
            "/v1/memories", json={"content": "Moved billing to K8s", "tags": ["K8s", "Billing Team"]},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["action"] == "inserted"
        assert data["tags"] == ["kubernetes", "billing-team"]
        assert data["embedded"] is True

    async def test_ingest_validation(self, client):
        resp = await client.post("/v1/memories", json={"content": ""})
        assert resp.status_code == 422
        assert resp.json()["error"] == "Validation error"

    async def test_bad_content_type_is_400(self, client):
        resp = await client.post("/v1/memories", json={"content": "x", "content_type": "video"})
        assert resp.status_code == 400

    async def test_duplicate_counted(self, client):
        await client.post("/v1/memories", json={"content": "same fact"})
        await client.post("/v1/memories", json={"content": "Same   fact"})
        resp = await client.get("/v1/counters", params={"prefix": "memory."})
        assert resp.json()["counters"] == {"memory.dedup_matched": 1}


@pytest.mark.asyncio
class TestSearch:
    async def test_search_returns_results(self, client):
        await client.post("/v1/memories", json={"content": "sqlite vector extension notes"})
        await client.post("/v1/memories", json={"content": "weekend hiking plan"})

        resp = await client.post("/v1/search", json={"query": "sqlite vector", "limit": 5})
        await _drain()
        assert resp.status_code == 200
        data = resp.json()
        assert data["mode"] == "full"
        assert data["results"][0]["content"] == "sqlite vector extension notes"

    async def test_keyword_only_without_usable_embedding(self, client):
        await client.post("/v1/memories", json={"content": "sqlite vector extension notes"})

        class _Broken(_StubEmbedder):
            async def embed(self, text):
                raise RuntimeError("provider down")

        api_module._search_cache = {}
        api_module._embedder = _Broken()
        resp = await client.post("/v1/search", json={"query": "sqlite"})
        await _drain()
        assert resp.json()["mode"] == "keyword_only"
        assert len(resp.json()["results"]) == 1

    async def test_empty_normalized_query_is_400(self, client):
        resp = await client.post("/v1/search", json={"query": "??"})
        assert resp.status_code == 400

    async def test_invalid_filter_is_422(self, client):
        resp = await client.post("/v1/search", json={"query": "x", "content_type": "video"})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Maintenance jobs
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestMaintenance:
    async def test_backfill_dry_run(self, client):
        api_module._storage_pool.get().store_memory(content="legacy", tags=["Legacy Tag"])
        resp = await client.post("/v1/backfill", json={"dry_run": True})
        data = resp.json()
        assert data["dry_run"] is True
        assert data["scanned"] == 1
        assert data["updated"] == 1

    async def test_reembed_requires_embedder(self, client):
        api_module._embedder = None
        resp = await client.post("/v1/reembed", json={})
        assert resp.status_code == 503
        assert (await client.post("/v1/reembed", json={"dry_run": True})).status_code == 200

    async def test_densify_and_related(self, client):
        storage = api_module._storage_pool.get()
        a = storage.store_entity("Alice", "person")
        b = storage.store_entity("Acme", "organization")
        for i in range(2):
            mid = storage.store_memory(content=f"Alice at Acme {i}")
            storage.link_memory_entity(mid, a)
            storage.link_memory_entity(mid, b)

        resp = await client.post("/v1/entities/densify", json={})
        assert resp.json() == {"pairs_analyzed": 1, "relationships_created": 1, "dry_run": False}

        related = (await client.get(f"/v1/entities/{a}/related")).json()["related"]
        assert related[0]["entity"]["id"] == b
        assert related[0]["relationship"] == "co-occurs"

    async def test_related_unknown_entity(self, client):
        resp = await client.get("/v1/entities/nope/related")
        assert resp.status_code == 404
        assert resp.json()["status_code"] == 404

    async def test_consolidate_dry_run(self, client):
        for i in range(3):
            await client.post("/v1/memories", json={"content": f"identical vector memory {i}"})
        resp = await client.post("/v1/consolidate", json={"dry_run": True})
        data = resp.json()
        assert data["dry_run"] is True
        assert len(data["clusters"]) == 1
        assert data["summaries_created"] == 0
        assert (await client.get("/v1/consolidations")).json() == {"consolidations": []}

    async def test_consolidate(self, client):
        for i in range(3):
            await client.post("/v1/memories", json={"content": f"identical vector memory {i}"})
        data = (await client.post("/v1/consolidate", json={})).json()
        assert data["summaries_created"] == 1
        history = (await client.get("/v1/consolidations")).json()["consolidations"]
        assert history[0]["memories_merged"] == 3


# ---------------------------------------------------------------------------
# Temporal
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestTimeline:
    async def test_timeline(self, client):
        await client.post("/v1/memories", json={"content": "today's note"})
        data = (await client.get("/v1/timeline", params={"include_memories": "true"})).json()
        assert len(data["timeline"]) == 1
        assert data["timeline"][0]["count"] == 1
        assert data["timeline"][0]["memories"][0]["content"] == "today's note"

    async def test_invalid_date_is_400(self, client):
        resp = await client.get("/v1/timeline", params={"after": "yesterday"})
        assert resp.status_code == 400

    async def test_stats(self, client):
        await client.post("/v1/memories", json={"content": "today's note"})
        data = (await client.get("/v1/timeline/stats")).json()
        assert data["total_days"] == 1
        assert data["streak_current"] == 1


# ---------------------------------------------------------------------------
# Retrieval regression
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestRegression:
    async def test_golden_queries_roundtrip(self, client):
        resp = await client.put("/v1/regression/queries", json={"queries": [" alpha ", {"query": "beta"}]})
        assert [q["query"] for q in resp.json()["queries"]] == ["alpha", "beta"]
        data = (await client.get("/v1/regression/queries")).json()
        assert [q["query"] for q in data["queries"]] == ["alpha", "beta"]

    async def test_run_compare_promote_reset(self, client):
        await client.post("/v1/memories", json={"content": "alpha release checklist"})
        await client.put("/v1/regression/queries", json={"queries": ["alpha"]})

        first = (await client.post("/v1/regression/run", json={})).json()
        assert first["initialized"] == 1
        run_id = first["run_id"]

        second = (await client.post("/v1/regression/run", json={})).json()
        assert second["results"][0]["overlap_at_10"] == 1.0
        assert second["alerts"] == 0

        runs = (await client.get("/v1/regression/runs")).json()["runs"]
        assert len(runs) == 2

        compared = (await client.post("/v1/regression/compare", json={"run_id": run_id})).json()
        assert compared["alerts"] == 0

        promoted = (await client.post("/v1/regression/promote", json={"run_id": run_id})).json()
        assert promoted["promoted"] == 1

        reset = (await client.post("/v1/regression/reset", json={})).json()
        assert reset["removed"] == 1

    async def test_unknown_run_is_404(self, client):
        resp = await client.post("/v1/regression/compare", json={"run_id": "missing"})
        assert resp.status_code == 404
        resp = await client.post("/v1/regression/promote", json={"run_id": "missing"})
        assert resp.status_code == 404

    async def test_threshold_validation(self, client):
        resp = await client.post("/v1/regression/run", json={"queries": ["a"], "min_overlap_at_10": 2})
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
class TestCounters:
    async def test_metrics_exposition(self, client):
        await client.post("/v1/memories", json={"content": "same fact"})
        await client.post("/v1/memories", json={"content": "same fact"})
        resp = await client.get("/metrics")
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert "# TYPE memory_intel_memory_dedup_matched_total counter" in resp.text
        assert "memory_intel_memory_dedup_matched_total 1" in resp.text

    async def test_reset(self, client):
        await client.post("/v1/memories", json={"content": "same fact"})
        await client.post("/v1/memories", json={"content": "same fact"})
        resp = await client.post("/v1/counters/reset", json={"key": "memory.dedup_matched"})
        assert resp.json() == {"reset": 1}
        assert (await client.get("/v1/counters")).json() == {"counters": {}}
