"""Shared fixtures for memory_intel tests."""

from __future__ import annotations

import hashlib
from typing import List

import pytest

from memory_intel.counters import Counters
from memory_intel.entities import KnowledgeGraph
from memory_intel.search import HybridSearch
from memory_intel.storage import MemoryStorage


# ---------------------------------------------------------------------------
# Ensure no real API calls or home-directory writes leak out
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch, tmp_path):
    """Dummy API key and a temp default DB path for every test."""
    monkeypatch.setenv("OPENROUTER_API_KEY", "test-key-for-pytest")
    monkeypatch.setenv("MEMORY_INTEL_DB", str(tmp_path / "default.sqlite"))
    monkeypatch.delenv("MEMORY_INTEL_CONFIG", raising=False)


# ---------------------------------------------------------------------------
# Storage fixture (temporary DB)
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_storage(tmp_path):
    """Create a fresh MemoryStorage backed by a temp SQLite file (4-dim vectors)."""
    db_path = str(tmp_path / "test.sqlite")
    s = MemoryStorage(db_path=db_path, dimensions=4)
    yield s
    s.close()


@pytest.fixture
def counters(tmp_storage):
    return Counters(tmp_storage)


# ---------------------------------------------------------------------------
# Mock embedder
# ---------------------------------------------------------------------------

class FakeEmbedder:
    """Deterministic embedder: the vector is derived from a SHA-256 of the text.

    Identical texts always produce the same vector, across processes too.
    Set ``fail = True`` to simulate a provider outage.
    """

    def __init__(self, dims: int = 4):
        self.dims = dims
        self.call_count = 0
        self.fail = False

    def dimensions(self) -> int:
        return self.dims

    async def embed(self, text: str) -> List[float]:
        self.call_count += 1
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return self._deterministic_vector(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.call_count += 1
        if self.fail:
            raise RuntimeError("embedding provider unavailable")
        return [self._deterministic_vector(t) for t in texts]

    def _deterministic_vector(self, text: str) -> List[float]:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vec = [(digest[i] + 1) / 256.0 for i in range(self.dims)]
        mag = sum(v * v for v in vec) ** 0.5
        return [v / mag for v in vec]


@pytest.fixture
def fake_embedder():
    """Return a FakeEmbedder with 4 dimensions."""
    return FakeEmbedder(dims=4)


# ---------------------------------------------------------------------------
# Search / graph fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def hybrid_search(tmp_storage, fake_embedder):
    """Return a HybridSearch wired to temp storage + fake embedder."""
    return HybridSearch(storage=tmp_storage, embedder=fake_embedder)


@pytest.fixture
def knowledge_graph(tmp_storage):
    return KnowledgeGraph(storage=tmp_storage)
