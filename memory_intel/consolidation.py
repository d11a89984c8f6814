"""Cluster-based memory consolidation.

Lightweight approach (no LLM required):
- Group active memories whose embeddings are mutually similar
- Build an extractive summary (key facts + context sentences)
- Store the summary as a new memory, archive the members under it and
  write an audit record, all in one transaction

Generative rewriting of summaries is left to external tooling; callers can
pass their own summary text to :func:`consolidate_cluster`.
"""

from __future__ import annotations

import json
import logging
import re
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import numpy as np

from .canonical import compute_content_hash, normalize_tags
from .embeddings import EmbeddingProvider
from .storage import MemoryStorage, new_memory_id

logger = logging.getLogger(__name__)

STRATEGY = "similarity"
SUMMARY_IMPORTANCE = 0.8

_TOPIC_CHARS = 80
_MAX_KEY_FACTS = 8
_MAX_CONTEXT = 5
_MAX_TOPIC_TAGS = 5

# Sentence boundary: terminal punctuation followed by whitespace
_SENTENCE_RE = re.compile(r"[.!?]\n|[.!?]\s")

KEY_FACT_PATTERNS = [
    re.compile(r"\b\d{4}[-/]\d{2}[-/]\d{2}\b"),  # dates
    re.compile(r"\b\d+(\.\d+)?%"),  # percentages
    re.compile(r"\$[\d,.]+"),  # dollar amounts
    re.compile(r"\b\d+(\.\d+)?\s*(ms|seconds?|minutes?|hours?|days?|GB|MB|KB|k|M)\b", re.I),
    re.compile(r"\b(decided|decision|chose|chosen|selected|resolved)\b", re.I),
    re.compile(r"\b(architecture|design|pattern|approach|strategy|schema|migration)\b", re.I),
    re.compile(r"\b(bug|fix|error|issue|problem|broken|resolved)\b", re.I),
    re.compile(r"\b(added|removed|created|deleted|updated|changed|migrated)\b", re.I),
]


@dataclass
class Cluster:
    centroid_id: str
    member_ids: List[str]
    avg_similarity: float
    topic: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _topic_label(content: str) -> str:
    topic = re.sub(r"\s+", " ", content[:_TOPIC_CHARS]).strip()
    return topic + "..." if len(content) > _TOPIC_CHARS else topic


def _fmt_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def find_clusters(
    storage: MemoryStorage,
    min_similarity: float = 0.75,
    min_cluster_size: int = 3,
    max_memories: int = 500,
) -> List[Cluster]:
    """Greedy complete-linkage clustering of the newest active memories.

    Each unassigned memory (newest first) seeds a cluster; a candidate joins
    only if its cosine similarity to every member already in the cluster is
    at least *min_similarity*. Clusters smaller than *min_cluster_size* are
    discarded and their memories stay available to later seeds.
    """
    if not -1.0 <= min_similarity <= 1.0:
        raise ValueError("min_similarity must be in [-1, 1]")
    if min_cluster_size < 2:
        raise ValueError("min_cluster_size must be >= 2")

    rows = storage.active_embeddings(max_memories)
    if len(rows) < min_cluster_size:
        return []

    mems = [m for m, _ in rows]
    matrix = np.vstack([v for _, v in rows]).astype(np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    unit = matrix / norms
    sims = unit @ unit.T

    assigned: set[int] = set()
    clusters: List[Cluster] = []
    for seed in range(len(mems)):
        if seed in assigned:
            continue
        members = [seed]
        for cand in range(len(mems)):
            if cand == seed or cand in assigned:
                continue
            if all(sims[cand, m] >= min_similarity for m in members):
                members.append(cand)
        if len(members) < min_cluster_size:
            continue

        assigned.update(members)
        pair_sims = [float(sims[a, b]) for i, a in enumerate(members) for b in members[i + 1:]]
        clusters.append(Cluster(
            centroid_id=mems[seed]["id"],
            member_ids=[mems[i]["id"] for i in members],
            avg_similarity=round(sum(pair_sims) / len(pair_sims), 4),
            topic=_topic_label(mems[seed]["content"]),
        ))

    logger.debug("find_clusters: scanned=%d clusters=%d", len(mems), len(clusters))
    return clusters


def generate_basic_summary(storage: MemoryStorage, member_ids: List[str]) -> str:
    """Extractive summary of the given memories; no network access.

    Sentences matching a key-fact pattern (dates, figures, decisions,
    architecture, issues, changes) are listed first, remaining sentences
    as context.
    """
    found = storage.get_memories(member_ids)
    rows = sorted(found.values(), key=lambda m: (m["created_at"], m["id"]))
    if not rows:
        return ""

    topics = normalize_tags([t for m in rows for t in m["tags"]], alias_map={})
    key_facts: List[str] = []
    context: List[str] = []
    for row in rows:
        for sentence in _SENTENCE_RE.split(row["content"]):
            sentence = sentence.strip()
            if len(sentence) <= 10:
                continue
            bucket = key_facts if any(p.search(sentence) for p in KEY_FACT_PATTERNS) else context
            if sentence not in bucket:
                bucket.append(sentence)

    header = (
        f"[Consolidated summary of {len(rows)} memories from "
        f"{_fmt_ts(rows[0]['created_at'])} to {_fmt_ts(rows[-1]['created_at'])}"
    )
    if topics:
        header += f"; topics: {', '.join(topics[:_MAX_TOPIC_TAGS])}"
    parts = [header + "]"]
    if key_facts:
        parts.append("Key facts:\n" + "\n".join(f"- {f}" for f in key_facts[:_MAX_KEY_FACTS]))
    if context:
        parts.append("Context:\n" + "\n".join(f"- {c}" for c in context[:_MAX_CONTEXT]))
    return "\n\n".join(parts)


async def consolidate_cluster(
    storage: MemoryStorage,
    cluster: Cluster,
    summary: str,
    embedder: Optional[EmbeddingProvider] = None,
) -> Optional[str]:
    """Merge *cluster* under a new summary memory. Returns the summary id.

    Returns None without writing anything when a member is missing or no
    longer active. The summary insert, member archival and audit record are
    committed together.
    """
    summary = (summary or "").strip()
    if not summary:
        raise ValueError("summary must not be empty")
    if not cluster.member_ids:
        raise ValueError("cluster has no members")
    member_ids = list(dict.fromkeys(cluster.member_ids))

    vector: Optional[List[float]] = None
    if embedder is not None:
        try:
            vector = await embedder.embed(summary)
        except Exception as exc:
            logger.warning("Summary embedding failed; storing without vector: %s", exc)
        if vector is not None and len(vector) != storage.dimensions:
            vector = None

    normalize_ws = storage.get_bool_setting("dedup.hash_normalize_whitespace", True)
    now = time.time()
    placeholders = ",".join("?" for _ in member_ids)

    with storage.transaction() as conn:
        active = conn.execute(
            f"SELECT COUNT(*) FROM memories WHERE is_active = 1 AND id IN ({placeholders})",
            member_ids,
        ).fetchone()[0]
        if active != len(member_ids):
            logger.info(
                "Consolidation skipped: %d of %d members missing or inactive",
                len(member_ids) - active, len(member_ids),
            )
            return None

        tag_rows = conn.execute(
            f"""SELECT tag FROM memory_tags WHERE memory_id IN ({placeholders})
                ORDER BY memory_id, position""",
            member_ids,
        ).fetchall()
        tags = list(dict.fromkeys(r["tag"] for r in tag_rows))

        summary_id = storage._insert_memory(
            conn,
            content=summary,
            vector=vector,
            content_type="summary",
            source="consolidation",
            importance=SUMMARY_IMPORTANCE,
            tags=tags,
            metadata={
                "strategy": STRATEGY,
                "topic": cluster.topic,
                "source_count": len(member_ids),
                "source_ids": member_ids,
            },
            is_metadata=False,
            content_hash=compute_content_hash(summary, normalize_ws),
            memory_id=new_memory_id(now),
            created_at=now,
        )
        conn.execute(
            """INSERT INTO consolidations
               (id, summary_id, source_ids, strategy, memories_merged, topic, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (uuid.uuid4().hex[:16], summary_id, json.dumps(member_ids), STRATEGY,
             len(member_ids), cluster.topic, now),
        )
        conn.executemany(
            "UPDATE memories SET parent_id = ?, is_active = 0, updated_at = ? WHERE id = ?",
            [(summary_id, now, mid) for mid in member_ids],
        )

    logger.info("Consolidated %d memories into %s (%s)", len(member_ids), summary_id, cluster.topic)
    return summary_id


def get_consolidations(storage: MemoryStorage, limit: int = 20) -> List[Dict[str, Any]]:
    """Consolidation audit records, newest first."""
    return storage.get_consolidations(limit)


async def run_consolidation(
    storage: MemoryStorage,
    embedder: Optional[EmbeddingProvider] = None,
    min_similarity: float = 0.75,
    min_cluster_size: int = 3,
    max_memories: int = 500,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Find clusters and, unless *dry_run*, consolidate each with a basic summary."""
    clusters = find_clusters(storage, min_similarity, min_cluster_size, max_memories)

    summary_ids: List[str] = []
    if not dry_run:
        for cluster in clusters:
            summary = generate_basic_summary(storage, cluster.member_ids)
            summary_id = await consolidate_cluster(storage, cluster, summary, embedder)
            if summary_id:
                summary_ids.append(summary_id)

    return {
        "clusters": [c.to_dict() for c in clusters],
        "summaries_created": len(summary_ids),
        "summary_ids": summary_ids,
        "dry_run": dry_run,
    }
