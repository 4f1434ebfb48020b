"""
Persistence Layer for Stream Meter

SQLite-backed checkpoint storage and settlement audit trail.
"""

from .database import Database, get_database
from .kv import KVStore, KVStoreError, MemoryKVStore, SQLiteKVStore
from .models import SettlementRecord
from .repository import SettlementRepository

__all__ = [
    "Database",
    "get_database",
    "KVStore",
    "KVStoreError",
    "MemoryKVStore",
    "SQLiteKVStore",
    "SettlementRecord",
    "SettlementRepository",
]
