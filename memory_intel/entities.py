"""Entity graph.

Entities are linked to memories through ``memory_entities``; relationships
between entities live in ``entity_relationships`` with at most one row per
unordered pair. :meth:`KnowledgeGraph.densify` infers the missing edges from
co-occurrence: two entities linked to the same memories are probably related.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from .storage import MemoryStorage

logger = logging.getLogger(__name__)

CO_OCCURS = "co-occurs"


def co_occurrence_confidence(shared: int) -> float:
    """Linear in shared-memory count, 0.3 floor, capped at 0.9."""
    return min(0.9, 0.3 + (shared / 10) * 0.6)


@dataclass
class DensifyResult:
    pairs_analyzed: int
    relationships_created: int
    dry_run: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_CO_OCCURRING_PAIRS_SQL = """
SELECT me1.entity_id AS a,
       me2.entity_id AS b,
       COUNT(DISTINCT me1.memory_id) AS shared,
       MIN(me1.memory_id) AS first_memory
FROM memory_entities me1
JOIN memory_entities me2
  ON me1.memory_id = me2.memory_id AND me1.entity_id < me2.entity_id
WHERE NOT EXISTS (
    SELECT 1 FROM entity_relationships er
    WHERE (er.source_entity_id = me1.entity_id AND er.target_entity_id = me2.entity_id)
       OR (er.source_entity_id = me2.entity_id AND er.target_entity_id = me1.entity_id)
)
GROUP BY me1.entity_id, me2.entity_id
HAVING shared >= ?
ORDER BY shared DESC, a, b
LIMIT ?
"""


class KnowledgeGraph:
    """Entity links, relationship reads and co-occurrence densification."""

    def __init__(self, storage: MemoryStorage) -> None:
        self.storage = storage

    def add_entity(
        self,
        name: str,
        entity_type: str,
        aliases: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        name = (name or "").strip()
        if not name:
            raise ValueError("entity name must not be empty")
        return self.storage.store_entity(name, entity_type, aliases, metadata, entity_id)

    def link_memory(self, entity_id: str, memory_id: str, relevance: float = 1.0) -> None:
        self.storage.link_memory_entity(memory_id, entity_id, relevance)

    def get_entity_memories(self, entity_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """Active memories linked to an entity, most relevant first."""
        conn = self.storage._get_conn()
        rows = conn.execute(
            """SELECT m.id, m.content, m.created_at, me.relevance
               FROM memory_entities me JOIN memories m ON m.id = me.memory_id
               WHERE me.entity_id = ? AND m.is_active = 1
               ORDER BY me.relevance DESC, m.created_at DESC
               LIMIT ?""",
            (entity_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_related(self, entity_id: str) -> List[Dict[str, Any]]:
        """Neighbours of an entity regardless of edge direction."""
        related = []
        for rel in self.storage.get_relationships(entity_id):
            other_id = (
                rel["target_entity_id"]
                if rel["source_entity_id"] == entity_id
                else rel["source_entity_id"]
            )
            other = self.storage.get_entity(other_id)
            if other is None:
                continue
            related.append({
                "entity": other,
                "relationship": rel["relationship"],
                "confidence": rel["confidence"],
                "memory_id": rel["memory_id"],
            })
        return related

    def densify(
        self,
        min_co_occurrences: int = 2,
        limit: int = 500,
        dry_run: bool = False,
    ) -> DensifyResult:
        """Create ``co-occurs`` edges between entities sharing enough memories.

        Pairs that already have a relationship in either direction are never
        considered. Evidence is the earliest shared memory. All edges of one
        run are written in a single transaction.
        """
        if min_co_occurrences < 1:
            raise ValueError("min_co_occurrences must be >= 1")
        if limit < 1:
            raise ValueError("limit must be >= 1")

        conn = self.storage._get_conn()
        pairs = conn.execute(_CO_OCCURRING_PAIRS_SQL, (min_co_occurrences, limit)).fetchall()

        if dry_run:
            return DensifyResult(len(pairs), len(pairs), True)

        created = 0
        now = time.time()
        with self.storage.transaction() as conn:
            for pair in pairs:
                cur = conn.execute(
                    """INSERT OR IGNORE INTO entity_relationships
                       (id, source_entity_id, target_entity_id, relationship,
                        confidence, memory_id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?)""",
                    (
                        uuid.uuid4().hex[:16], pair["a"], pair["b"], CO_OCCURS,
                        co_occurrence_confidence(pair["shared"]), pair["first_memory"], now,
                    ),
                )
                created += cur.rowcount

        logger.info("Densify: analyzed=%d created=%d", len(pairs), created)
        return DensifyResult(len(pairs), created, False)
