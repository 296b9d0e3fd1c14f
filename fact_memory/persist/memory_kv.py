"""In-process key-value backend for tests and ephemeral deployments."""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from .backend import KVBackend, MEMORY_TABLES


class MemoryKV(KVBackend):
    """
    Dict-backed KVBackend.

    Each table is an independent dict guarded by a single lock, so the
    store can be shared between the event loop and worker threads.
    """

    def __init__(self, tables: Iterable[str] = MEMORY_TABLES):
        self._tables: Dict[str, Dict[str, bytes]] = {t: {} for t in tables}
        self._lock = threading.Lock()

    def _table(self, table: str) -> Dict[str, bytes]:
        try:
            return self._tables[table]
        except KeyError:
            raise KeyError(f"Unknown table: {table}") from None

    def set(self, table: str, key: str, value: bytes) -> None:
        with self._lock:
            self._table(table)[key] = value

    def get(self, table: str, key: str) -> Optional[bytes]:
        with self._lock:
            return self._table(table).get(key)

    def delete(self, table: str, key: str) -> bool:
        with self._lock:
            return self._table(table).pop(key, None) is not None

    def scan(self, table: str, prefix: str = "") -> List[Tuple[str, bytes]]:
        with self._lock:
            rows = [(k, v) for k, v in self._table(table).items() if k.startswith(prefix)]
        rows.sort(key=lambda kv: kv[0])
        return rows

    def purge_table(self, table: str) -> int:
        with self._lock:
            data = self._table(table)
            count = len(data)
            data.clear()
        return count

    def stats(self, table: str) -> dict:
        """Get entry count and byte size for a table."""
        with self._lock:
            data = self._table(table)
            return {
                "count": len(data),
                "total_bytes": sum(len(v) for v in data.values()),
            }
