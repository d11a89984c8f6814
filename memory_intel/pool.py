"""Connection pool keyed by resolved database path.

Every caller asking for the same database file (after ``~`` expansion and
symlink resolution) shares one MemoryStorage and therefore one SQLite
connection. The pool lazily creates MemoryStorage instances on first access;
schema is auto-created by MemoryStorage.__init__.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .storage import MemoryStorage

logger = logging.getLogger(__name__)


class StoragePool:
    """Manages one MemoryStorage per resolved database path."""

    def __init__(self, default_path: str, dimensions: int, busy_timeout_ms: int = 5000) -> None:
        self.default_path = default_path
        self.dimensions = dimensions
        self.busy_timeout_ms = busy_timeout_ms
        self._storages: Dict[str, MemoryStorage] = {}

    @staticmethod
    def resolve_key(db_path: str) -> str:
        if not db_path or not db_path.strip():
            raise ValueError("database path must not be empty")
        return str(Path(db_path).expanduser().resolve())

    def get(self, db_path: Optional[str] = None) -> MemoryStorage:
        """Get or create the MemoryStorage for *db_path* (default path when omitted)."""
        key = self.resolve_key(db_path or self.default_path)
        if key not in self._storages:
            self._storages[key] = MemoryStorage(
                db_path=key,
                dimensions=self.dimensions,
                busy_timeout_ms=self.busy_timeout_ms,
            )
            logger.info("StoragePool: opened %s", key)
        return self._storages[key]

    def open_paths(self) -> List[str]:
        return sorted(self._storages)

    def close_all(self) -> None:
        """Close all open database connections."""
        for storage in self._storages.values():
            storage.close()
        self._storages.clear()
