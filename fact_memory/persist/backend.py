"""
Key-indexed storage interface shared by every persistence backend.

Tables partition records by concern (memories, identity index, owner
index, consent decisions, pending consent prompts). Keys are plain
strings; callers build prefix-scannable keys like ``<user>:<id>``.
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

MEMORY_TABLES = ["memories", "identity", "owners", "consent", "pending"]


class KVBackend(ABC):
    """Abstract table-scoped key-value store."""

    @abstractmethod
    def set(self, table: str, key: str, value: bytes) -> None:
        """Insert or replace a value."""

    @abstractmethod
    def get(self, table: str, key: str) -> Optional[bytes]:
        """Return the stored value or None."""

    @abstractmethod
    def delete(self, table: str, key: str) -> bool:
        """Delete a key; True if something was removed."""

    @abstractmethod
    def scan(self, table: str, prefix: str = "") -> List[Tuple[str, bytes]]:
        """Return (key, value) pairs whose key starts with prefix, ordered by key."""

    @abstractmethod
    def purge_table(self, table: str) -> int:
        """Delete all entries from a table and return how many were removed."""

    def close(self) -> None:
        """Release resources held by the backend."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
