"""Embedding providers.

Components never look an embedder up globally: each one receives an object
satisfying :class:`EmbeddingProvider` at construction time, so tests can pass
a deterministic stub and the API can swap providers at startup.

:class:`OpenRouterEmbeddings` is the production provider. It uses raw
``requests`` (not the OpenAI SDK) against the OpenRouter ``/embeddings``
endpoint:

* Async-friendly (``asyncio.to_thread`` around blocking requests)
* Batch support, one HTTP call for many texts
* Retry with exponential back-off on 429/5xx and transport errors
* In-memory LRU cache for repeated texts
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import List, Optional, Protocol, runtime_checkable

import requests

from .config import load_config

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class EmbeddingError(Exception):
    """Raised when the embedding provider cannot produce a vector."""


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability every retrieval/consolidation component is given."""

    async def embed(self, text: str) -> List[float]: ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]: ...

    def dimensions(self) -> int: ...


class OpenRouterEmbeddings:
    """Lightweight async wrapper around the OpenRouter embeddings endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        cache_size: Optional[int] = None,
        timeout: float = 60.0,
    ) -> None:
        cfg = load_config()
        self.api_key: str = api_key or cfg.openrouter_api_key
        self.model: str = model or cfg.embedding_model
        self._dimensions: int = dimensions or cfg.embedding_dimensions
        self.base_url: str = (base_url or cfg.openrouter_base_url).rstrip("/")
        self.max_retries: int = max_retries or cfg.embed_max_retries
        self.timeout = timeout

        self._url = f"{self.base_url}/embeddings"
        self._headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        self._cache_size = cache_size or cfg.embed_cache_size
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()

    def dimensions(self) -> int:
        return self._dimensions

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    def _cache_key(self, text: str) -> str:
        return hashlib.sha256(f"{self.model}\0{text}".encode("utf-8")).hexdigest()

    def _cache_get(self, text: str) -> Optional[List[float]]:
        key = self._cache_key(text)
        vec = self._cache.get(key)
        if vec is not None:
            self._cache.move_to_end(key)
        return vec

    def _cache_put(self, text: str, vector: List[float]) -> None:
        key = self._cache_key(text)
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    # ------------------------------------------------------------------
    # Low-level HTTP call with retries
    # ------------------------------------------------------------------

    def _call_api(self, texts: List[str]) -> List[List[float]]:
        """Blocking HTTP POST to OpenRouter with exponential back-off."""
        payload = {
            "model": self.model,
            "input": texts,
        }

        last_exc: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                resp = requests.post(
                    self._url,
                    headers=self._headers,
                    json=payload,
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                last_exc = exc
                wait = 2 ** attempt
                logger.warning(
                    "Embedding request error (attempt %d/%d): %s, retrying in %ds",
                    attempt + 1, self.max_retries, exc, wait,
                )
                time.sleep(wait)
                continue

            if resp.status_code == 200:
                return self._parse_response(resp.json(), len(texts))

            if resp.status_code in _RETRYABLE_STATUS:
                last_exc = EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:200]}")
                wait = 2 ** attempt
                logger.warning(
                    "OpenRouter %s (attempt %d/%d), retrying in %ds",
                    resp.status_code, attempt + 1, self.max_retries, wait,
                )
                time.sleep(wait)
                continue

            raise EmbeddingError(f"HTTP {resp.status_code}: {resp.text[:500]}")

        raise EmbeddingError(f"Failed after {self.max_retries} retries: {last_exc}")

    def _parse_response(self, data: dict, expected: int) -> List[List[float]]:
        # OpenAI-compatible response: data.data[i].embedding
        try:
            items = sorted(data["data"], key=lambda d: d["index"])
            vectors = [list(map(float, item["embedding"])) for item in items]
        except (KeyError, TypeError, ValueError) as exc:
            raise EmbeddingError(f"Malformed embedding response: {exc}") from exc
        if len(vectors) != expected:
            raise EmbeddingError(f"Expected {expected} embeddings, got {len(vectors)}")
        for vec in vectors:
            if len(vec) != self._dimensions:
                raise EmbeddingError(
                    f"Embedding has {len(vec)} dimensions, expected {self._dimensions}"
                )
        return vectors

    # ------------------------------------------------------------------
    # Public async API
    # ------------------------------------------------------------------

    async def embed(self, text: str) -> List[float]:
        """Embed a single text string. Returns a vector (list of floats)."""
        cached = self._cache_get(text)
        if cached is not None:
            return cached

        vectors = await asyncio.to_thread(self._call_api, [text])
        vec = vectors[0]
        self._cache_put(text, vec)
        return vec

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts in one API call. Returns list of vectors."""
        results: List[Optional[List[float]]] = [None] * len(texts)
        uncached_indices: List[int] = []
        uncached_texts: List[str] = []

        for i, text in enumerate(texts):
            cached = self._cache_get(text)
            if cached is not None:
                results[i] = cached
                continue
            uncached_indices.append(i)
            uncached_texts.append(text)

        if uncached_texts:
            vectors = await asyncio.to_thread(self._call_api, uncached_texts)
            for idx, vec in zip(uncached_indices, vectors):
                results[idx] = vec
                self._cache_put(texts[idx], vec)

        return results  # type: ignore[return-value]
