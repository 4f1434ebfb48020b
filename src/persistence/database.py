"""
Database Connection Layer

SQLite storage for checkpoints (key-value) and the settlement audit trail,
with automatic schema creation.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Durable key-value store (checkpoints)
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Settlement attempts (audit trail)
-- Amounts are TEXT: ledger uint128 values do not fit SQLite INTEGER
CREATE TABLE IF NOT EXISTS settlement_attempts (
    attempt_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    content_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    attempted_at INTEGER NOT NULL,
    result TEXT NOT NULL,
    external_ref TEXT,
    error_message TEXT,
    tries INTEGER NOT NULL DEFAULT 1,
    final INTEGER NOT NULL DEFAULT 0
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_settlement_session ON settlement_attempts(session_id);
CREATE INDEX IF NOT EXISTS idx_settlement_result ON settlement_attempts(result);
CREATE INDEX IF NOT EXISTS idx_settlement_time ON settlement_attempts(attempted_at);
"""


class Database:
    """
    SQLite connection manager.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to streammeter.db
        with db.connection() as conn:
            conn.execute("SELECT * FROM settlement_attempts")
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///streammeter.db"
        )
        if not self.database_url.startswith("sqlite:///"):
            raise ValueError(f"Unsupported DATABASE_URL: {self.database_url}")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests switch DATABASE_URL between runs)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        return self.database_url[10:] or "streammeter.db"

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            with self.connection() as conn:
                conn.executescript(SCHEMA_SQL)
                now = datetime.now(timezone.utc).isoformat()
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, now)
                )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query and return results as list of dicts."""
        with self.connection() as conn:
            cursor = conn.execute(query, params)
            if cursor.description:
                return [dict(row) for row in cursor.fetchall()]
            return []

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
