"""
Durable Key-Value Stores

The checkpoint store only needs get/set/delete over string values. Any
backing store with those semantics will do; SQLite is the default and an
in-memory dict serves tests and the score demo.
"""

from datetime import datetime, timezone
from typing import Dict, Optional, Protocol
import sqlite3
import structlog

from .database import Database, get_database

logger = structlog.get_logger()


class KVStoreError(Exception):
    """Raised when the backing store cannot complete a read or write."""
    pass


class KVStore(Protocol):
    """Durable get/set/delete over string keys and values."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryKVStore:
    """Process-local store. Survives disconnects, not restarts."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class SQLiteKVStore:
    """Key-value store on the kv_store table."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()

    def get(self, key: str) -> Optional[str]:
        try:
            results = self.db.execute(
                "SELECT value FROM kv_store WHERE key = ?",
                (key,)
            )
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to read {key}: {e}") from e
        return results[0]["value"] if results else None

    def set(self, key: str, value: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            self.db.execute(
                """INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                  updated_at = excluded.updated_at""",
                (key, value, now)
            )
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to write {key}: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.db.execute("DELETE FROM kv_store WHERE key = ?", (key,))
        except sqlite3.Error as e:
            raise KVStoreError(f"Failed to delete {key}: {e}") from e
        logger.debug("kv_deleted", key=key)
