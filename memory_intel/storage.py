"""SQLite + sqlite-vec storage layer.

Single-file database with:
* ``sqlite-vec`` extension for vector similarity search (cosine)
* FTS5 virtual table for keyword search
* Tag, entity, relationship and memory-entity link tables
* Settings, durable counters, consolidation history, access log
* Retrieval-regression baselines and run snapshots
* Auto-create schema on first use
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from ulid import ULID

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("text", "conversation", "note", "summary")
ENTITY_TYPES = ("person", "project", "technology", "organization", "concept")

# ---------------------------------------------------------------------------
# sqlite-vec extension loading
# ---------------------------------------------------------------------------

def _load_vec_extension(conn: sqlite3.Connection) -> None:
    """Load the sqlite-vec extension into *conn*.

    Extension loading is only enabled for the duration of the load call.
    """
    conn.enable_load_extension(True)
    try:
        import sqlite_vec
        sqlite_vec.load(conn)
    except Exception as exc:
        logger.error("Failed to load sqlite-vec: %s", exc)
        raise
    finally:
        conn.enable_load_extension(False)


def new_memory_id(created_at: Optional[float] = None) -> str:
    """Time-ordered identifier; lexical order follows creation time."""
    if created_at is None:
        return str(ULID())
    return str(ULID.from_timestamp(created_at))


def _vec_blob(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


# sqlite-vec rejects larger k values in a KNN query.
MAX_KNN_K = 4096


@dataclass
class MemoryFilter:
    """Candidate predicate applied inside the retrieval queries.

    ``is_metadata`` of ``None`` admits both kinds; ``False`` drops metadata
    memories and ``True`` keeps only them.
    """

    content_type: Optional[str] = None
    after: Optional[float] = None
    before: Optional[float] = None
    tags: Sequence[str] = ()
    is_metadata: Optional[bool] = None

    def clause(self, alias: str = "m") -> Tuple[str, List[Any]]:
        conds = [f"{alias}.is_active = 1"]
        params: List[Any] = []
        if self.content_type:
            conds.append(f"{alias}.content_type = ?")
            params.append(self.content_type)
        if self.after is not None:
            conds.append(f"{alias}.created_at >= ?")
            params.append(self.after)
        if self.before is not None:
            conds.append(f"{alias}.created_at <= ?")
            params.append(self.before)
        if self.tags:
            marks = ",".join("?" * len(self.tags))
            conds.append(
                f"{alias}.id IN (SELECT memory_id FROM memory_tags WHERE tag IN ({marks}))"
            )
            params.extend(self.tags)
        if self.is_metadata is not None:
            conds.append(f"{alias}.is_metadata = ?")
            params.append(int(self.is_metadata))
        return " AND ".join(conds), params


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    content_type TEXT NOT NULL DEFAULT 'text'
        CHECK (content_type IN ('text', 'conversation', 'note', 'summary')),
    source TEXT,
    importance REAL NOT NULL DEFAULT 0.5 CHECK (importance >= 0 AND importance <= 1),
    access_count INTEGER NOT NULL DEFAULT 0 CHECK (access_count >= 0),
    last_accessed_at REAL,
    created_at REAL NOT NULL,
    updated_at REAL,
    is_active INTEGER NOT NULL DEFAULT 1,
    content_hash TEXT,
    is_metadata INTEGER NOT NULL DEFAULT 0,
    metadata TEXT DEFAULT '{}',
    parent_id TEXT REFERENCES memories(id) ON DELETE SET NULL,
    vector_rowid INTEGER
);

CREATE INDEX IF NOT EXISTS idx_memories_created ON memories(created_at);
CREATE INDEX IF NOT EXISTS idx_memories_active ON memories(is_active);
CREATE INDEX IF NOT EXISTS idx_memories_hash ON memories(content_hash);
CREATE INDEX IF NOT EXISTS idx_memories_vector ON memories(vector_rowid);

CREATE VIRTUAL TABLE IF NOT EXISTS memory_fts USING fts5(
    id UNINDEXED,
    content,
    tokenize='porter unicode61'
);

CREATE TABLE IF NOT EXISTS memory_tags (
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    tag TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (memory_id, tag)
);

CREATE INDEX IF NOT EXISTS idx_memory_tags_tag ON memory_tags(tag);

CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL
        CHECK (type IN ('person', 'project', 'technology', 'organization', 'concept')),
    aliases TEXT DEFAULT '[]',
    metadata TEXT DEFAULT '{}',
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name);

CREATE TABLE IF NOT EXISTS memory_entities (
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    relevance REAL NOT NULL DEFAULT 1.0 CHECK (relevance >= 0 AND relevance <= 1),
    PRIMARY KEY (memory_id, entity_id)
);

CREATE INDEX IF NOT EXISTS idx_memory_entities_entity ON memory_entities(entity_id);

CREATE TABLE IF NOT EXISTS entity_relationships (
    id TEXT PRIMARY KEY,
    source_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    target_entity_id TEXT NOT NULL REFERENCES entities(id) ON DELETE CASCADE,
    relationship TEXT NOT NULL,
    confidence REAL NOT NULL DEFAULT 0.5 CHECK (confidence >= 0 AND confidence <= 1),
    memory_id TEXT REFERENCES memories(id) ON DELETE SET NULL,
    created_at REAL NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_rel_pair ON entity_relationships(
    min(source_entity_id, target_entity_id),
    max(source_entity_id, target_entity_id)
);
CREATE INDEX IF NOT EXISTS idx_rel_target ON entity_relationships(target_entity_id);

CREATE TABLE IF NOT EXISTS consolidations (
    id TEXT PRIMARY KEY,
    summary_id TEXT NOT NULL,
    source_ids TEXT NOT NULL DEFAULT '[]',
    strategy TEXT NOT NULL,
    memories_merged INTEGER NOT NULL,
    topic TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS access_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
    query TEXT,
    accessed_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_access_log_memory ON access_log(memory_id);

CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS observability_counters (
    key TEXT PRIMARY KEY,
    value INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS retrieval_regression_baselines (
    query TEXT PRIMARY KEY,
    top_ids TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS retrieval_regression_runs (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    query TEXT NOT NULL,
    baseline_ids TEXT NOT NULL,
    current_ids TEXT NOT NULL,
    overlap_at_10 REAL NOT NULL,
    avg_rank_shift REAL NOT NULL,
    exact_order INTEGER NOT NULL,
    alert INTEGER NOT NULL,
    created_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_regression_runs_run ON retrieval_regression_runs(run_id)
"""

_FTS_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _fts_query(query: str) -> str:
    """Quote each word token and OR-join them so FTS5 syntax never leaks through."""
    return " OR ".join(f'"{tok}"' for tok in _FTS_TOKEN_RE.findall(query))


def _decode_metadata(raw: Optional[str]) -> Tuple[Dict[str, Any], Optional[str]]:
    """Parse a stored metadata column into ``(dict, error)``.

    Malformed or non-object JSON yields an empty dict plus the error text.
    """
    try:
        value = json.loads(raw or "{}")
    except ValueError as exc:
        return {}, str(exc)
    if not isinstance(value, dict):
        return {}, f"expected a JSON object, got {type(value).__name__}"
    return value, None


class MemoryStorage:
    """SQLite-backed storage with vector search and FTS5."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        dimensions: Optional[int] = None,
        busy_timeout_ms: Optional[int] = None,
    ) -> None:
        from .config import load_config

        cfg = load_config()
        self.db_path = db_path or cfg.db_path
        self.dimensions = dimensions or cfg.embedding_dimensions
        self.busy_timeout_ms = cfg.busy_timeout_ms if busy_timeout_ms is None else busy_timeout_ms

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn: Optional[sqlite3.Connection] = None
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Connection helpers
    # ------------------------------------------------------------------

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout_ms / 1000.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            self._conn.execute("PRAGMA temp_store = MEMORY")
            _load_vec_extension(self._conn)
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit everything executed in the block, or roll all of it back."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Schema bootstrap
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        conn = self._get_conn()
        conn.executescript(_SCHEMA_SQL)

        # vec0 tables have no IF NOT EXISTS on older sqlite-vec builds
        exists = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE name = 'memory_vectors'"
        ).fetchone()
        if not exists:
            conn.execute(f"""
                CREATE VIRTUAL TABLE memory_vectors USING vec0(
                    embedding float[{self.dimensions}] distance_metric=cosine
                )
            """)

        # Safe migrations for existing DBs ---------------------------------
        def _col_exists(table: str, col: str) -> bool:
            rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
            return any(r[1] == col for r in rows)

        def _add_col(table: str, coldef: str, colname: str) -> None:
            if _col_exists(table, colname):
                return
            try:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {coldef}")
                logger.info("Schema migration: added %s.%s", table, colname)
            except sqlite3.OperationalError as exc:
                logger.debug("Schema migration skipped for %s.%s: %s", table, colname, exc)

        _add_col("memories", "content_hash TEXT", "content_hash")
        _add_col("memories", "is_metadata INTEGER NOT NULL DEFAULT 0", "is_metadata")
        _add_col("memories", "metadata TEXT DEFAULT '{}'", "metadata")
        _add_col("consolidations", "topic TEXT", "topic")

        conn.commit()

    # ------------------------------------------------------------------
    # Row decoding
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_memory(row: sqlite3.Row) -> Dict[str, Any]:
        d = dict(row)
        d["metadata"], error = _decode_metadata(d.get("metadata"))
        if error:
            logger.warning("Memory %s has undecodable metadata: %s", d.get("id"), error)
            d["metadata_error"] = error
        d["is_active"] = bool(d["is_active"])
        d["is_metadata"] = bool(d["is_metadata"])
        return d

    def _attach_tags(self, memories: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        if not memories:
            return memories
        tags = self.get_tags_bulk([m["id"] for m in memories])
        for m in memories:
            m["tags"] = tags.get(m["id"], [])
        return memories

    # ------------------------------------------------------------------
    # Memory CRUD
    # ------------------------------------------------------------------

    def _insert_memory(
        self,
        conn: sqlite3.Connection,
        content: str,
        vector: Optional[Sequence[float]],
        content_type: str,
        source: Optional[str],
        importance: float,
        tags: Sequence[str],
        metadata: Optional[Dict[str, Any]],
        is_metadata: bool,
        content_hash: Optional[str],
        memory_id: Optional[str],
        created_at: Optional[float],
        parent_id: Optional[str] = None,
    ) -> str:
        """Insert without committing; callers own the transaction."""
        now = time.time()
        created = now if created_at is None else created_at
        mid = memory_id or new_memory_id(created)

        vector_rowid: Optional[int] = None
        if vector is not None:
            cur = conn.execute(
                "INSERT INTO memory_vectors(embedding) VALUES (?)", (_vec_blob(vector),)
            )
            vector_rowid = cur.lastrowid

        conn.execute(
            """INSERT INTO memories
               (id, content, content_type, source, importance, access_count,
                last_accessed_at, created_at, updated_at, is_active,
                content_hash, is_metadata, metadata, parent_id, vector_rowid)
               VALUES (?, ?, ?, ?, ?, 0, NULL, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                mid, content, content_type, source, importance,
                created, created, content_hash, int(is_metadata),
                json.dumps(metadata or {}), parent_id, vector_rowid,
            ),
        )
        conn.execute(
            "INSERT INTO memory_fts(id, content) VALUES (?, ?)", (mid, content)
        )
        self._write_tags(conn, mid, tags)
        return mid

    def store_memory(
        self,
        content: str,
        vector: Optional[Sequence[float]] = None,
        content_type: str = "text",
        source: Optional[str] = None,
        importance: float = 0.5,
        tags: Optional[Sequence[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        is_metadata: bool = False,
        content_hash: Optional[str] = None,
        memory_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> str:
        """Insert a memory. Returns the memory ID.

        *tags* are stored as given; canonicalization happens in
        :func:`memory_intel.ingest.ingest_memory`.
        """
        if content_type not in CONTENT_TYPES:
            raise ValueError(f"content_type must be one of {CONTENT_TYPES}, got {content_type!r}")
        if not 0.0 <= importance <= 1.0:
            raise ValueError(f"importance must be in [0, 1], got {importance}")

        with self.transaction() as conn:
            return self._insert_memory(
                conn, content, vector, content_type, source, importance,
                tags or [], metadata, is_metadata, content_hash, memory_id, created_at,
            )

    def get_memory(self, memory_id: str) -> Optional[Dict[str, Any]]:
        """Return a single memory dict (with ``tags``) or None."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        ).fetchone()
        if not row:
            return None
        return self._attach_tags([self._decode_memory(row)])[0]

    def get_memories(self, memory_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Bulk fetch by id, returned keyed by id (missing ids are absent)."""
        if not memory_ids:
            return {}
        conn = self._get_conn()
        placeholders = ",".join("?" for _ in memory_ids)
        rows = conn.execute(
            f"SELECT * FROM memories WHERE id IN ({placeholders})", list(memory_ids)
        ).fetchall()
        memories = self._attach_tags([self._decode_memory(r) for r in rows])
        return {m["id"]: m for m in memories}

    def scan_memories(self, limit: int, active_only: bool = False) -> List[Dict[str, Any]]:
        """Oldest-first scan bounded by *limit*."""
        conn = self._get_conn()
        where = "WHERE is_active = 1" if active_only else ""
        rows = conn.execute(
            f"SELECT * FROM memories {where} ORDER BY created_at, id LIMIT ?", (limit,)
        ).fetchall()
        return self._attach_tags([self._decode_memory(r) for r in rows])

    def recent_memory_ids(self, limit: int, flt: Optional[MemoryFilter] = None) -> List[str]:
        where, params = (flt or MemoryFilter()).clause()
        conn = self._get_conn()
        rows = conn.execute(
            f"SELECT m.id AS id FROM memories m WHERE {where} "
            "ORDER BY m.created_at DESC, m.id DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [r["id"] for r in rows]

    def count_memories(self, flt: Optional[MemoryFilter] = None) -> int:
        """Number of active memories matching *flt*."""
        where, params = (flt or MemoryFilter()).clause()
        conn = self._get_conn()
        row = conn.execute(f"SELECT COUNT(*) AS n FROM memories m WHERE {where}", params).fetchone()
        return int(row["n"])

    def find_by_hash(self, content_hash: str) -> Optional[str]:
        """Oldest active memory carrying *content_hash*, if any."""
        conn = self._get_conn()
        row = conn.execute(
            """SELECT id FROM memories
               WHERE content_hash = ? AND is_active = 1
               ORDER BY created_at, id LIMIT 1""",
            (content_hash,),
        ).fetchone()
        return row["id"] if row else None

    def update_canonical(
        self,
        memory_id: str,
        content_hash: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        is_metadata: Optional[bool] = None,
    ) -> bool:
        """Rewrite the derived canonical fields of one memory. Returns True if found."""
        with self.transaction() as conn:
            row = conn.execute("SELECT id FROM memories WHERE id = ?", (memory_id,)).fetchone()
            if not row:
                return False
            updates: List[str] = []
            params: List[Any] = []
            if content_hash is not None:
                updates.append("content_hash = ?")
                params.append(content_hash)
            if is_metadata is not None:
                updates.append("is_metadata = ?")
                params.append(int(is_metadata))
            if tags is not None:
                self._write_tags(conn, memory_id, tags)
            updates.append("updated_at = ?")
            params.append(time.time())
            params.append(memory_id)
            conn.execute(f"UPDATE memories SET {', '.join(updates)} WHERE id = ?", params)
        return True

    def set_embedding(self, memory_id: str, vector: Sequence[float]) -> bool:
        """Attach or replace the embedding of a memory. Returns True if found."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT vector_rowid FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
            if not row:
                return False
            blob = _vec_blob(vector)
            if row["vector_rowid"] is not None:
                conn.execute(
                    "UPDATE memory_vectors SET embedding = ? WHERE rowid = ?",
                    (blob, row["vector_rowid"]),
                )
            else:
                cur = conn.execute("INSERT INTO memory_vectors(embedding) VALUES (?)", (blob,))
                conn.execute(
                    "UPDATE memories SET vector_rowid = ? WHERE id = ?", (cur.lastrowid, memory_id)
                )
        return True

    def deactivate_memory(self, memory_id: str) -> bool:
        """Soft-delete. Returns True if an active memory was deactivated."""
        with self.transaction() as conn:
            cur = conn.execute(
                "UPDATE memories SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
                (time.time(), memory_id),
            )
        return cur.rowcount > 0

    def delete_memory(self, memory_id: str) -> bool:
        """Delete a memory and its vector/FTS entries. Returns True if found."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT vector_rowid FROM memories WHERE id = ?", (memory_id,)
            ).fetchone()
            if not row:
                return False
            if row["vector_rowid"] is not None:
                conn.execute("DELETE FROM memory_vectors WHERE rowid = ?", (row["vector_rowid"],))
            conn.execute("DELETE FROM memory_fts WHERE id = ?", (memory_id,))
            conn.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
        return True

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, memory_id: str, tags: Sequence[str]) -> None:
        conn.execute("DELETE FROM memory_tags WHERE memory_id = ?", (memory_id,))
        conn.executemany(
            "INSERT OR IGNORE INTO memory_tags (memory_id, tag, position) VALUES (?, ?, ?)",
            [(memory_id, tag, pos) for pos, tag in enumerate(tags)],
        )

    def get_tags(self, memory_id: str) -> List[str]:
        return self.get_tags_bulk([memory_id]).get(memory_id, [])

    def get_tags_bulk(self, memory_ids: Sequence[str]) -> Dict[str, List[str]]:
        if not memory_ids:
            return {}
        conn = self._get_conn()
        placeholders = ",".join("?" for _ in memory_ids)
        rows = conn.execute(
            f"""SELECT memory_id, tag FROM memory_tags
                WHERE memory_id IN ({placeholders})
                ORDER BY memory_id, position""",
            list(memory_ids),
        ).fetchall()
        out: Dict[str, List[str]] = {}
        for r in rows:
            out.setdefault(r["memory_id"], []).append(r["tag"])
        return out

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def get_embeddings(self, memory_ids: Sequence[str]) -> Dict[str, np.ndarray]:
        """Raw float32 embeddings keyed by memory id (memories without one are absent)."""
        if not memory_ids:
            return {}
        conn = self._get_conn()
        placeholders = ",".join("?" for _ in memory_ids)
        rows = conn.execute(
            f"""SELECT m.id AS id, mv.embedding AS embedding
                FROM memories m JOIN memory_vectors mv ON mv.rowid = m.vector_rowid
                WHERE m.id IN ({placeholders})""",
            list(memory_ids),
        ).fetchall()
        return {r["id"]: np.frombuffer(r["embedding"], dtype=np.float32) for r in rows}

    def active_embeddings(self, limit: int) -> List[Tuple[Dict[str, Any], np.ndarray]]:
        """Newest-first active memories that have an embedding, with the vector."""
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT m.*, mv.embedding AS embedding
               FROM memories m JOIN memory_vectors mv ON mv.rowid = m.vector_rowid
               WHERE m.is_active = 1
               ORDER BY m.created_at DESC, m.id DESC
               LIMIT ?""",
            (limit,),
        ).fetchall()
        out = []
        for r in rows:
            mem = dict(r)
            blob = mem.pop("embedding")
            mem["metadata"], _ = _decode_metadata(mem.get("metadata"))
            out.append((mem, np.frombuffer(blob, dtype=np.float32)))
        return out

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def search_vectors(
        self,
        query_vector: Sequence[float],
        limit: int = 10,
        flt: Optional[MemoryFilter] = None,
    ) -> List[Tuple[str, float]]:
        """Nearest-neighbour search via sqlite-vec.

        Returns ``(memory_id, cosine_similarity)`` pairs for memories matching
        *flt* (active ones by default), closest first. The KNN step cannot see
        the predicate, so k grows until *limit* matches are found or every
        stored vector has been considered.
        """
        where, params = (flt or MemoryFilter()).clause()
        conn = self._get_conn()
        total = conn.execute(
            "SELECT COUNT(*) AS n FROM memories WHERE vector_rowid IS NOT NULL"
        ).fetchone()["n"]
        ceiling = max(limit, min(total, MAX_KNN_K))
        k = min(limit, MAX_KNN_K)
        blob = _vec_blob(query_vector)
        while True:
            rows = conn.execute(
                f"""
                SELECT m.id AS id, knn.distance AS distance
                FROM (
                    SELECT rowid, distance
                    FROM memory_vectors
                    WHERE embedding MATCH ? AND k = ?
                ) knn
                JOIN memories m ON m.vector_rowid = knn.rowid
                WHERE {where}
                ORDER BY knn.distance
                """,
                (blob, k, *params),
            ).fetchall()
            if len(rows) >= limit or k >= ceiling:
                break
            k = min(k * 4, ceiling)
        # cosine distance = 1 - cosine similarity
        return [(r["id"], 1.0 - float(r["distance"])) for r in rows[:limit]]

    # ------------------------------------------------------------------
    # Full-text search
    # ------------------------------------------------------------------

    def search_text(
        self,
        query: str,
        limit: int = 10,
        flt: Optional[MemoryFilter] = None,
    ) -> List[Tuple[str, float]]:
        """FTS5 search over memories matching *flt*. Returns ``(memory_id, bm25)`` best first."""
        safe_query = _fts_query(query)
        if not safe_query:
            return []
        where, params = (flt or MemoryFilter()).clause()
        conn = self._get_conn()
        rows = conn.execute(
            f"""
            SELECT fts.id AS id, bm25(memory_fts) AS rank
            FROM memory_fts fts
            JOIN memories m ON m.id = fts.id
            WHERE memory_fts MATCH ? AND {where}
            ORDER BY rank
            LIMIT ?
            """,
            (safe_query, *params, limit),
        ).fetchall()
        return [(r["id"], float(r["rank"])) for r in rows]

    # ------------------------------------------------------------------
    # Access recording
    # ------------------------------------------------------------------

    def record_access(self, memory_ids: Sequence[str], query: Optional[str] = None) -> int:
        """Bump access counters and append access-log rows in one transaction.

        Returns the number of memories updated; unknown ids are skipped.
        """
        now = time.time()
        updated = 0
        with self.transaction() as conn:
            for mid in memory_ids:
                cur = conn.execute(
                    """UPDATE memories
                       SET access_count = access_count + 1, last_accessed_at = ?
                       WHERE id = ?""",
                    (now, mid),
                )
                if cur.rowcount:
                    conn.execute(
                        "INSERT INTO access_log (memory_id, query, accessed_at) VALUES (?, ?, ?)",
                        (mid, query, now),
                    )
                    updated += 1
        return updated

    def get_access_log(self, memory_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT memory_id, query, accessed_at FROM access_log
               WHERE memory_id = ? ORDER BY accessed_at DESC, id DESC LIMIT ?""",
            (memory_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Entity CRUD
    # ------------------------------------------------------------------

    def store_entity(
        self,
        name: str,
        entity_type: str,
        aliases: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        """Insert an entity, or return the id of the existing one with the same name and type."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"entity type must be one of {ENTITY_TYPES}, got {entity_type!r}")
        conn = self._get_conn()
        existing = conn.execute(
            "SELECT id FROM entities WHERE lower(name) = ? AND type = ?",
            (name.lower().strip(), entity_type),
        ).fetchone()
        if existing:
            return existing["id"]

        eid = entity_id or uuid.uuid4().hex[:16]
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO entities (id, name, type, aliases, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (eid, name, entity_type, json.dumps(aliases or []),
                 json.dumps(metadata or {}), time.time()),
            )
        return eid

    def get_entity(self, entity_id: str) -> Optional[Dict[str, Any]]:
        """Return entity dict or None."""
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM entities WHERE id = ?", (entity_id,)).fetchone()
        if row:
            d = dict(row)
            d["aliases"] = json.loads(d.get("aliases") or "[]")
            d["metadata"] = json.loads(d.get("metadata") or "{}")
            return d
        return None

    def link_memory_entity(self, memory_id: str, entity_id: str, relevance: float = 1.0) -> None:
        if not 0.0 <= relevance <= 1.0:
            raise ValueError(f"relevance must be in [0, 1], got {relevance}")
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO memory_entities (memory_id, entity_id, relevance)
                   VALUES (?, ?, ?)
                   ON CONFLICT(memory_id, entity_id) DO UPDATE SET relevance = excluded.relevance""",
                (memory_id, entity_id, relevance),
            )

    def add_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship: str,
        confidence: float = 0.5,
        memory_id: Optional[str] = None,
    ) -> Optional[str]:
        """Create a relationship unless the unordered pair already has one.

        Returns the new id, or None when the pair was already related.
        """
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {confidence}")
        rid = uuid.uuid4().hex[:16]
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO entity_relationships
                   (id, source_entity_id, target_entity_id, relationship,
                    confidence, memory_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (rid, source_id, target_id, relationship, confidence, memory_id, time.time()),
            )
        return rid if cur.rowcount else None

    def get_relationships(self, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        if entity_id:
            rows = conn.execute(
                """SELECT * FROM entity_relationships
                   WHERE source_entity_id = ? OR target_entity_id = ?
                   ORDER BY created_at, id""",
                (entity_id, entity_id),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM entity_relationships ORDER BY created_at, id"
            ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        conn = self._get_conn()
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_setting(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO settings (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, str(value), time.time()),
            )

    def delete_setting(self, key: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM settings WHERE key = ?", (key,))
        return cur.rowcount > 0

    def get_bool_setting(self, key: str, default: bool) -> bool:
        """``"false"``/``"0"``/``"no"``/``"off"`` are false, any other value true."""
        raw = self.get_setting(key)
        if raw is None:
            return default
        return raw.strip().lower() not in ("false", "0", "no", "off")

    def get_float_setting(self, key: str, default: float) -> float:
        raw = self.get_setting(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except ValueError:
            logger.warning("Setting %s=%r is not a number; using %s", key, raw, default)
            return default

    def get_int_setting(self, key: str, default: int) -> int:
        raw = self.get_setting(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Setting %s=%r is not an integer; using %s", key, raw, default)
            return default

    # ------------------------------------------------------------------
    # Consolidation history
    # ------------------------------------------------------------------

    def get_consolidations(self, limit: int = 20) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM consolidations ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["source_ids"] = json.loads(d.get("source_ids") or "[]")
            out.append(d)
        return out

    # ------------------------------------------------------------------
    # Retrieval regression
    # ------------------------------------------------------------------

    def get_baseline(self, query: str) -> Optional[List[str]]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT top_ids FROM retrieval_regression_baselines WHERE query = ?", (query,)
        ).fetchone()
        return json.loads(row["top_ids"]) if row else None

    def set_baseline(self, query: str, top_ids: Sequence[str]) -> None:
        now = time.time()
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO retrieval_regression_baselines (query, top_ids, created_at, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(query) DO UPDATE SET top_ids = excluded.top_ids,
                                                    updated_at = excluded.updated_at""",
                (query, json.dumps(list(top_ids)), now, now),
            )

    def delete_baselines(self, queries: Optional[Sequence[str]] = None) -> int:
        with self.transaction() as conn:
            if queries is None:
                cur = conn.execute("DELETE FROM retrieval_regression_baselines")
            else:
                placeholders = ",".join("?" for _ in queries) or "NULL"
                cur = conn.execute(
                    f"DELETE FROM retrieval_regression_baselines WHERE query IN ({placeholders})",
                    list(queries),
                )
        return cur.rowcount

    def insert_regression_runs(self, rows: Sequence[Dict[str, Any]]) -> None:
        """Persist per-query snapshots of one regression run atomically."""
        with self.transaction() as conn:
            conn.executemany(
                """INSERT INTO retrieval_regression_runs
                   (id, run_id, query, baseline_ids, current_ids, overlap_at_10,
                    avg_rank_shift, exact_order, alert, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        uuid.uuid4().hex[:16], r["run_id"], r["query"],
                        json.dumps(r["baseline_ids"]), json.dumps(r["current_ids"]),
                        r["overlap_at_10"], r["avg_rank_shift"],
                        int(r["exact_order"]), int(r["alert"]), r["created_at"],
                    )
                    for r in rows
                ],
            )

    def get_regression_run(self, run_id: str) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT * FROM retrieval_regression_runs WHERE run_id = ? ORDER BY rowid", (run_id,)
        ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["baseline_ids"] = json.loads(d["baseline_ids"])
            d["current_ids"] = json.loads(d["current_ids"])
            d["exact_order"] = bool(d["exact_order"])
            d["alert"] = bool(d["alert"])
            out.append(d)
        return out

    def list_regression_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute(
            """SELECT run_id, MIN(created_at) AS created_at, COUNT(*) AS queries,
                      SUM(alert) AS alerts
               FROM retrieval_regression_runs
               GROUP BY run_id
               ORDER BY created_at DESC
               LIMIT ?""",
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return database statistics."""
        conn = self._get_conn()

        def _count(sql: str) -> int:
            return conn.execute(sql).fetchone()[0]

        by_type = conn.execute(
            "SELECT content_type, COUNT(*) AS c FROM memories WHERE is_active = 1 GROUP BY content_type"
        ).fetchall()
        return {
            "total_memories": _count("SELECT COUNT(*) FROM memories"),
            "active_memories": _count("SELECT COUNT(*) FROM memories WHERE is_active = 1"),
            "with_embedding": _count("SELECT COUNT(*) FROM memories WHERE vector_rowid IS NOT NULL"),
            "by_content_type": {r["content_type"]: r["c"] for r in by_type},
            "entities": _count("SELECT COUNT(*) FROM entities"),
            "relationships": _count("SELECT COUNT(*) FROM entity_relationships"),
            "consolidations": _count("SELECT COUNT(*) FROM consolidations"),
        }
