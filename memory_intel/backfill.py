"""Batch repair of derived memory state.

Two bounded passes, both safe to re-run after a failure:

* :func:`backfill_canonical` recomputes content hashes, normalized tags and
  the metadata flag from the current settings.
* :func:`reembed_missing` embeds active memories that have no vector.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .canonical import compute_content_hash, infer_is_metadata, normalize_tags
from .embeddings import EmbeddingProvider
from .ingest import CanonicalSettings
from .storage import MemoryStorage

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_LIMIT = 10000
_MAX_ERROR_SAMPLES = 5
_ERROR_SAMPLE_CHARS = 200


@dataclass
class BackfillResult:
    scanned: int = 0
    hashes_updated: int = 0
    tags_updated: int = 0
    metadata_flag_updated: int = 0
    updated: int = 0
    errors: int = 0
    error_samples: List[str] = field(default_factory=list)
    dry_run: bool = False

    def record_error(self, memory_id: str, exc: Exception) -> None:
        self.errors += 1
        if len(self.error_samples) < _MAX_ERROR_SAMPLES:
            self.error_samples.append(f"{memory_id}: {exc}"[:_ERROR_SAMPLE_CHARS])

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def backfill_canonical(
    storage: MemoryStorage,
    limit: int = DEFAULT_BACKFILL_LIMIT,
    dry_run: bool = False,
) -> BackfillResult:
    """Recompute hash, tags and metadata flag for up to *limit* memories.

    Tags are re-normalized (case, separators, aliases, duplicates), never
    regenerated. The metadata flag is only ever raised: a memory flagged
    explicitly at ingest stays flagged. A dry run computes the same counts
    without writing.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    settings = CanonicalSettings.from_storage(storage)
    result = BackfillResult(dry_run=dry_run)

    for mem in storage.scan_memories(limit):
        result.scanned += 1
        mid = mem["id"]
        try:
            if mem.get("metadata_error"):
                raise ValueError(f"undecodable metadata: {mem['metadata_error']}")
            new_hash = compute_content_hash(mem["content"], settings.normalize_whitespace)
            new_tags = normalize_tags(mem["tags"], settings.alias_map)
            inferred = infer_is_metadata(new_tags, mem["metadata"], settings.metadata_tags)
            new_flag = mem["is_metadata"] or inferred

            hash_changed = new_hash != mem["content_hash"]
            tags_changed = new_tags != mem["tags"]
            flag_changed = new_flag != mem["is_metadata"]
            if not (hash_changed or tags_changed or flag_changed):
                continue

            if not dry_run:
                storage.update_canonical(
                    mid,
                    content_hash=new_hash if hash_changed else None,
                    tags=new_tags if tags_changed else None,
                    is_metadata=new_flag if flag_changed else None,
                )
        except Exception as exc:
            logger.warning("Backfill failed for memory %s: %s", mid, exc)
            result.record_error(mid, exc)
            continue

        result.hashes_updated += int(hash_changed)
        result.tags_updated += int(tags_changed)
        result.metadata_flag_updated += int(flag_changed)
        result.updated += 1

    logger.info(
        "Canonical backfill%s: scanned=%d updated=%d (hash=%d tags=%d metadata=%d) errors=%d",
        " (dry run)" if dry_run else "",
        result.scanned, result.updated, result.hashes_updated,
        result.tags_updated, result.metadata_flag_updated, result.errors,
    )
    return result


async def reembed_missing(
    storage: MemoryStorage,
    embedder: EmbeddingProvider,
    limit: int = DEFAULT_BACKFILL_LIMIT,
    batch_size: int = 50,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Embed active memories stored without a vector."""
    if limit < 1 or batch_size < 1:
        raise ValueError("limit and batch_size must be >= 1")

    conn = storage._get_conn()
    rows = conn.execute(
        """SELECT id, content FROM memories
           WHERE is_active = 1 AND vector_rowid IS NULL
           ORDER BY created_at, id
           LIMIT ?""",
        (limit,),
    ).fetchall()

    if dry_run:
        return {"processed": 0, "failed": 0, "pending": len(rows), "dry_run": True}

    processed = 0
    failed = 0
    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        try:
            vectors: List[Optional[List[float]]] = list(
                await embedder.embed_batch([r["content"] for r in batch])
            )
        except Exception as exc:
            logger.warning("Re-embed batch %d failed: %s", i // batch_size, exc)
            failed += len(batch)
            continue
        for row, vec in zip(batch, vectors):
            if vec is None or len(vec) != storage.dimensions:
                failed += 1
                continue
            storage.set_embedding(row["id"], vec)
            processed += 1

    logger.info("Re-embed: processed=%d failed=%d", processed, failed)
    return {"processed": processed, "failed": failed, "pending": len(rows) - processed, "dry_run": False}
