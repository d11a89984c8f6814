"""Memory ingestion.

Canonicalizes incoming content (tags, metadata flag, content hash), embeds it
through the injected provider and persists it. Hash matches against existing
active memories are counted; whether a match is stored again or folded into
the existing memory is the ``dedup.skip_insert_on_match`` setting.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from . import counters as ctr
from .canonical import (
    auto_generate_tags,
    compute_content_hash,
    infer_is_metadata,
    normalize_tags,
    parse_metadata_tags,
    parse_tag_alias_map,
)
from .counters import Counters
from .embeddings import EmbeddingProvider
from .storage import MemoryStorage

logger = logging.getLogger(__name__)


@dataclass
class CanonicalSettings:
    """Install-wide canonicalization settings, parsed once per operation."""

    normalize_whitespace: bool = True
    alias_map: Dict[str, str] = field(default_factory=dict)
    auto_generate: bool = True
    metadata_tags: Set[str] = field(default_factory=set)

    @classmethod
    def from_storage(cls, storage: MemoryStorage) -> "CanonicalSettings":
        alias_map = parse_tag_alias_map(storage.get_setting("tags.alias_map"))
        return cls(
            normalize_whitespace=storage.get_bool_setting("dedup.hash_normalize_whitespace", True),
            alias_map=alias_map,
            auto_generate=storage.get_bool_setting("tags.auto_generate", True),
            metadata_tags=parse_metadata_tags(storage.get_setting("search.metadata_tags"), alias_map),
        )

    def tags_for(self, content: str, tags: Optional[Sequence[str]]) -> List[str]:
        """Normalized tags; auto-generated only when none were supplied."""
        normalized = normalize_tags(tags, self.alias_map)
        if not normalized and self.auto_generate:
            normalized = normalize_tags(auto_generate_tags(content), self.alias_map)
        return normalized


@dataclass
class IngestResult:
    id: str
    action: str  # "inserted" | "reused"
    content_hash: str
    tags: List[str]
    is_metadata: bool
    embedded: bool
    duplicate_of: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def ingest_memory(
    storage: MemoryStorage,
    embedder: Optional[EmbeddingProvider],
    content: str,
    *,
    content_type: str = "text",
    source: Optional[str] = None,
    importance: float = 0.5,
    tags: Optional[Sequence[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    is_metadata: Optional[bool] = None,
    created_at: Optional[float] = None,
    memory_id: Optional[str] = None,
    counters: Optional[Counters] = None,
) -> IngestResult:
    """Canonicalize, embed and store one memory."""
    content = (content or "").strip()
    if not content:
        raise ValueError("content must not be empty")
    if not 0.0 <= importance <= 1.0:
        raise ValueError(f"importance must be in [0, 1], got {importance}")

    counters = counters or Counters(storage)
    settings = CanonicalSettings.from_storage(storage)

    final_tags = settings.tags_for(content, tags)
    flag = infer_is_metadata(final_tags, metadata, settings.metadata_tags, explicit=is_metadata)
    content_hash = compute_content_hash(content, settings.normalize_whitespace)

    duplicate_of: Optional[str] = None
    if storage.get_bool_setting("dedup.hash_enabled", True):
        duplicate_of = storage.find_by_hash(content_hash)
        if duplicate_of:
            counters.increment(ctr.DEDUP_MATCHED)
            if storage.get_bool_setting("dedup.skip_insert_on_match", False):
                existing = storage.get_memory(duplicate_of)
                merged = normalize_tags((existing or {}).get("tags", []) + final_tags, settings.alias_map)
                storage.update_canonical(duplicate_of, tags=merged)
                counters.increment(ctr.DEDUP_SKIPPED)
                logger.info("Dedup: reused %s for identical content", duplicate_of)
                return IngestResult(
                    id=duplicate_of,
                    action="reused",
                    content_hash=content_hash,
                    tags=merged,
                    is_metadata=bool((existing or {}).get("is_metadata")),
                    embedded=False,
                    duplicate_of=duplicate_of,
                )

    vector: Optional[List[float]] = None
    if embedder is not None:
        try:
            vector = await embedder.embed(content)
        except Exception as exc:
            logger.warning("Embedding failed; storing without vector: %s", exc)
        if vector is not None and len(vector) != storage.dimensions:
            logger.warning(
                "Embedding has %d dimensions, store expects %d; storing without vector",
                len(vector), storage.dimensions,
            )
            vector = None

    mid = storage.store_memory(
        content=content,
        vector=vector,
        content_type=content_type,
        source=source,
        importance=importance,
        tags=final_tags,
        metadata=metadata,
        is_metadata=flag,
        content_hash=content_hash,
        memory_id=memory_id,
        created_at=created_at,
    )
    return IngestResult(
        id=mid,
        action="inserted",
        content_hash=content_hash,
        tags=final_tags,
        is_metadata=flag,
        embedded=vector is not None,
        duplicate_of=duplicate_of,
    )
