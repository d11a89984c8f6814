"""Tests for hybrid search: signals, fusion, filters and metadata modes."""

import math
import time
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from memory_intel.counters import (
    SEARCH_EMBEDDING_FAILURES,
    SEARCH_METADATA_EXCLUDED,
    SEARCH_METADATA_PENALIZED,
)
from memory_intel.search import (
    HybridSearch,
    SearchFilters,
    SearchWeights,
    _frequency_score,
    _recency_score,
    _rrf_fuse,
    normalize_query,
)

DAY = 86400.0


class StaticEmbedder:
    """Returns the same query vector for every text."""

    def __init__(self, vector):
        self.vector = vector

    def dimensions(self):
        return len(self.vector)

    async def embed(self, text):
        return list(self.vector)

    async def embed_batch(self, texts):
        return [list(self.vector) for _ in texts]


@pytest.fixture
def keyword_search(tmp_storage):
    """Search without an embedding provider; recency flattened for determinism."""
    tmp_storage.set_setting("scoring.recency_decay", "0")
    return HybridSearch(storage=tmp_storage)


class TestHelpers:
    def test_normalize_query(self):
        assert normalize_query("  What   is SQLite?? ") == "what is sqlite"

    def test_recency_decay(self):
        now = time.time()
        assert _recency_score(now, 0.5, 0.05, now) == pytest.approx(1.0)
        fresh = _recency_score(now - 10 * DAY, 0.0, 0.05, now)
        important = _recency_score(now - 10 * DAY, 1.0, 0.05, now)
        assert important > fresh
        assert fresh == pytest.approx(math.exp(-0.5))

    def test_frequency_blend(self):
        assert _frequency_score(0, 0, 0.4) == pytest.approx(0.2)
        assert _frequency_score(9, 9, 0.0) == pytest.approx(0.5)

    def test_rrf(self):
        scores = _rrf_fuse([["a", "b"], ["b"]], [1.0, 1.0], k=60)
        assert scores["b"] > scores["a"]
        assert scores["a"] == pytest.approx(1 / 61)


class TestFilters:
    def test_limit_capped(self):
        assert SearchFilters(limit=500).limit == 50

    def test_limit_below_one_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters(limit=0)

    def test_unknown_content_type_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters(content_type="email")

    def test_range_order(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValueError):
            SearchFilters(after=now, before=now - timedelta(days=1))

    def test_naive_datetimes_are_utc(self):
        f = SearchFilters(after=datetime(2026, 1, 1))
        assert f.after.tzinfo is timezone.utc


class TestWeights:
    def test_defaults(self, tmp_storage):
        w = SearchWeights.from_storage(tmp_storage)
        assert (w.semantic, w.keyword, w.recency, w.frequency) == (0.50, 0.25, 0.15, 0.10)
        assert w.fusion == "linear"

    def test_settings_override_and_bad_values(self, tmp_storage):
        tmp_storage.set_setting("scoring.keyword_weight", "0.9")
        tmp_storage.set_setting("scoring.semantic_weight", "-1")
        tmp_storage.set_setting("scoring.fusion", "magic")
        w = SearchWeights.from_storage(tmp_storage)
        assert w.keyword == 0.9
        assert w.semantic == 0.50
        assert w.fusion == "linear"


@pytest.mark.asyncio
class TestRanking:
    async def test_empty_query_rejected(self, keyword_search):
        with pytest.raises(ValueError):
            await keyword_search.search("  ?? ")

    async def test_keyword_match_ranks_first(self, tmp_storage, keyword_search):
        target = tmp_storage.store_memory(content="sqlite vector extension setup")
        tmp_storage.store_memory(content="grocery list for sunday")
        tmp_storage.store_memory(content="budget meeting notes")

        results = await keyword_search.search("sqlite vector")
        assert results[0].id == target
        assert results[0].keyword_score == pytest.approx(1.0)
        assert len(results) == 3

    async def test_semantic_signal(self, tmp_storage):
        near = tmp_storage.store_memory(content="first", vector=[1.0, 0.0, 0.0, 0.0])
        tmp_storage.store_memory(content="second", vector=[0.0, 1.0, 0.0, 0.0])
        search = HybridSearch(tmp_storage, embedder=StaticEmbedder([1.0, 0.0, 0.0, 0.0]))

        results = await search.search("unrelated words")
        assert results[0].id == near
        assert results[0].semantic_score == pytest.approx(1.0, abs=1e-5)
        assert results[1].semantic_score == pytest.approx(0.0, abs=1e-5)
        assert search.last_search_mode == "full"

    async def test_ties_break_newest_then_id(self, tmp_storage, keyword_search):
        ts = time.time()
        tmp_storage.store_memory(content="alpha", memory_id="m-b", created_at=ts)
        tmp_storage.store_memory(content="alpha", memory_id="m-a", created_at=ts)
        tmp_storage.store_memory(content="alpha", memory_id="m-c", created_at=ts + 1)

        results = await keyword_search.search("alpha")
        assert [r.id for r in results] == ["m-c", "m-a", "m-b"]

    async def test_frequency_signal(self, tmp_storage, keyword_search):
        ts = time.time()
        popular = tmp_storage.store_memory(content="alpha", created_at=ts)
        tmp_storage.store_memory(content="alpha", created_at=ts)
        tmp_storage.record_access([popular, popular])

        results = await keyword_search.search("alpha")
        assert results[0].id == popular
        assert results[0].frequency_score > results[1].frequency_score

    async def test_rrf_fusion(self, tmp_storage):
        tmp_storage.set_setting("scoring.fusion", "rrf")
        target = tmp_storage.store_memory(content="sqlite notes", vector=[1.0, 0.0, 0.0, 0.0])
        tmp_storage.store_memory(content="other things", vector=[0.0, 1.0, 0.0, 0.0])
        search = HybridSearch(tmp_storage, embedder=StaticEmbedder([1.0, 0.0, 0.0, 0.0]))

        results = await search.search("sqlite")
        assert results[0].id == target
        assert all(r.score < 1.0 for r in results)

    async def test_weights_from_settings(self, tmp_storage, keyword_search):
        for key, value in [
            ("scoring.semantic_weight", "0"), ("scoring.keyword_weight", "1"),
            ("scoring.recency_weight", "0"), ("scoring.frequency_weight", "0"),
        ]:
            tmp_storage.set_setting(key, value)
        tmp_storage.store_memory(content="half match only")

        results = await keyword_search.search("match nothing")
        assert results[0].score == pytest.approx(results[0].keyword_score)
        assert results[0].score == pytest.approx(0.5)

    async def test_min_score(self, tmp_storage, keyword_search):
        tmp_storage.store_memory(content="alpha beta")
        tmp_storage.store_memory(content="gamma")
        results = await keyword_search.search("alpha", SearchFilters(min_score=0.3))
        assert [r.content for r in results] == ["alpha beta"]


@pytest.mark.asyncio
class TestSearchFilters:
    async def test_tag_filter_any_of(self, tmp_storage, keyword_search):
        a = tmp_storage.store_memory(content="alpha one", tags=["kubernetes"])
        b = tmp_storage.store_memory(content="alpha two", tags=["python"])
        tmp_storage.store_memory(content="alpha three", tags=["rust"])

        results = await keyword_search.search("alpha", SearchFilters(tags=["K8s", "Python"]))
        assert {r.id for r in results} == {a, b}

    async def test_content_type_filter(self, tmp_storage, keyword_search):
        note = tmp_storage.store_memory(content="alpha", content_type="note")
        tmp_storage.store_memory(content="alpha")
        results = await keyword_search.search("alpha", SearchFilters(content_type="note"))
        assert [r.id for r in results] == [note]

    async def test_date_range(self, tmp_storage, keyword_search):
        now = time.time()
        tmp_storage.store_memory(content="alpha old", created_at=now - 10 * DAY)
        recent = tmp_storage.store_memory(content="alpha recent", created_at=now - DAY)
        after = datetime.fromtimestamp(now - 2 * DAY, tz=timezone.utc)
        results = await keyword_search.search("alpha", SearchFilters(after=after))
        assert [r.id for r in results] == [recent]

    async def test_filter_finds_match_behind_newer_memories(self, tmp_storage, keyword_search):
        now = time.time()
        note = tmp_storage.store_memory(
            content="alpha mentioned once in a long note on other subjects",
            content_type="note", tags=["rare"], created_at=now - 30 * DAY,
        )
        for i in range(60):
            tmp_storage.store_memory(content=f"alpha alpha item {i}", created_at=now - i)

        by_type = await keyword_search.search("alpha", SearchFilters(content_type="note"))
        by_tag = await keyword_search.search("alpha", SearchFilters(tags=["rare"]))
        assert [r.id for r in by_type] == [note]
        assert [r.id for r in by_tag] == [note]

    async def test_semantic_filter_reaches_distant_vectors(self, tmp_storage):
        tmp_storage.set_setting("scoring.recency_decay", "0")
        for i in range(60):
            tmp_storage.store_memory(content=f"close {i}", vector=[1.0, 0.0, 0.0, 0.0])
        note = tmp_storage.store_memory(content="far", content_type="note", vector=[0.0, 1.0, 0.0, 0.0])
        tmp_storage.store_memory(content="newest", vector=[1.0, 0.0, 0.0, 0.0])
        search = HybridSearch(tmp_storage, embedder=StaticEmbedder([1.0, 0.0, 0.0, 0.0]))

        results = await search.search("zzz", SearchFilters(content_type="note"))
        assert [r.id for r in results] == [note]

    async def test_limit(self, tmp_storage, keyword_search):
        for i in range(8):
            tmp_storage.store_memory(content=f"alpha {i}")
        results = await keyword_search.search("alpha", SearchFilters(limit=3))
        assert len(results) == 3

    async def test_inactive_never_returned(self, tmp_storage, keyword_search):
        mid = tmp_storage.store_memory(content="alpha")
        tmp_storage.deactivate_memory(mid)
        assert await keyword_search.search("alpha") == []


@pytest.mark.asyncio
class TestMetadataModes:
    async def _seed(self, storage):
        ts = time.time()
        user = storage.store_memory(content="alpha user fact", created_at=ts)
        meta = storage.store_memory(content="alpha benchmark run", is_metadata=True, created_at=ts)
        return user, meta

    async def test_include_by_default(self, tmp_storage, keyword_search):
        user, meta = await self._seed(tmp_storage)
        results = await keyword_search.search("alpha")
        assert {r.id for r in results} == {user, meta}

    async def test_exclude(self, tmp_storage, keyword_search):
        user, _ = await self._seed(tmp_storage)
        tmp_storage.set_setting("search.metadata_mode", "exclude")
        results = await keyword_search.search("alpha")
        assert [r.id for r in results] == [user]
        assert keyword_search.counters.get(SEARCH_METADATA_EXCLUDED) == 1

    async def test_per_query_override(self, tmp_storage, keyword_search):
        user, _ = await self._seed(tmp_storage)
        results = await keyword_search.search("alpha", SearchFilters(metadata_mode="exclude"))
        assert [r.id for r in results] == [user]

    async def test_exclude_survives_crowd_of_metadata(self, tmp_storage, keyword_search):
        now = time.time()
        user = tmp_storage.store_memory(content="alpha noted once among other words", created_at=now - DAY)
        for i in range(60):
            tmp_storage.store_memory(content=f"alpha alpha run {i}", is_metadata=True, created_at=now - i)

        results = await keyword_search.search("alpha", SearchFilters(metadata_mode="exclude"))
        assert [r.id for r in results] == [user]

    async def test_unobserved_search_leaves_counters(self, tmp_storage, keyword_search):
        await self._seed(tmp_storage)
        await keyword_search.search("alpha", SearchFilters(metadata_mode="exclude"), observe=False)
        await keyword_search.search("alpha", SearchFilters(metadata_mode="penalize"), observe=False)
        assert keyword_search.counters.get(SEARCH_METADATA_EXCLUDED) == 0
        assert keyword_search.counters.get(SEARCH_METADATA_PENALIZED) == 0

    async def test_penalize(self, tmp_storage, keyword_search):
        _, meta = await self._seed(tmp_storage)
        included = {r.id: r.score for r in await keyword_search.search("alpha", record_access=False)}

        tmp_storage.set_setting("search.metadata_mode", "penalize")
        tmp_storage.set_setting("search.metadata_penalty", "0.25")
        penalized = {r.id: r.score for r in await keyword_search.search("alpha", record_access=False)}

        assert penalized[meta] == pytest.approx(included[meta] * 0.25)
        assert keyword_search.counters.get(SEARCH_METADATA_PENALIZED) == 1

    async def test_penalty_out_of_range_uses_default(self, tmp_storage, keyword_search):
        tmp_storage.set_setting("search.metadata_penalty", "1.5")
        assert keyword_search._metadata_penalty() == 0.5


@pytest.mark.asyncio
class TestSideEffects:
    async def test_access_recorded_after_drain(self, tmp_storage, keyword_search):
        mid = tmp_storage.store_memory(content="alpha")
        await keyword_search.search("alpha")
        await keyword_search.drain()
        assert tmp_storage.get_memory(mid)["access_count"] == 1
        assert tmp_storage.get_access_log(mid)[0]["query"] == "alpha"

    async def test_no_access_recording_when_disabled(self, tmp_storage, keyword_search):
        mid = tmp_storage.store_memory(content="alpha")
        await keyword_search.search("alpha", record_access=False)
        await keyword_search.drain()
        assert tmp_storage.get_memory(mid)["access_count"] == 0

    async def test_access_failure_is_swallowed(self, tmp_storage, keyword_search, monkeypatch):
        tmp_storage.store_memory(content="alpha")

        def boom(*a, **kw):
            raise RuntimeError("locked")

        monkeypatch.setattr(tmp_storage, "record_access", boom)
        results = await keyword_search.search("alpha")
        await keyword_search.drain()
        assert len(results) == 1

    async def test_embedding_failure_degrades(self, tmp_storage, hybrid_search, fake_embedder):
        tmp_storage.store_memory(content="alpha", vector=[1.0, 0.0, 0.0, 0.0])
        fake_embedder.fail = True

        results = await hybrid_search.search("alpha")
        assert len(results) == 1
        assert results[0].semantic_score == 0.0
        assert hybrid_search.last_search_mode == "keyword_only"
        assert hybrid_search.counters.get(SEARCH_EMBEDDING_FAILURES) == 1

        fake_embedder.fail = False
        await hybrid_search.search("alpha")
        assert hybrid_search.last_search_mode == "full"
