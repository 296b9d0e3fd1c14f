"""
Persistence layer for the memory engine.

Provides:
- Key-indexed backend interface
- SQLite-backed KV store (WAL mode)
- In-process KV store
- Stable hashing for audit references
"""

from .backend import KVBackend, MEMORY_TABLES
from .hashing import stable_hash, short_hash
from .memory_kv import MemoryKV
from .sqlite_store import KVStore

__all__ = [
    "KVBackend",
    "MEMORY_TABLES",
    "stable_hash",
    "short_hash",
    "MemoryKV",
    "KVStore",
]
