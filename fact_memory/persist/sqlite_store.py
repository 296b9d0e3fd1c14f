"""
SQLite-backed key-value store for memory persistence.

Uses SQLite with separate tables for each record family:
- memories: <user>:<id> → MemoryItem JSON
- identity: <user>:<type>:<key>:<person> → memory id
- owners: <id> → owning user
- consent: <user>:<key> → ConsentRecord JSON
- pending: <user>:<key> → pending consent candidate JSON

All values stored as BLOB with a write timestamp.
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from .backend import KVBackend, MEMORY_TABLES

# Upper bound for prefix range scans
_PREFIX_END = "\U0010ffff"


class KVStore(KVBackend):
    """
    File-backed SQLite key-value store.

    Thread-safe with WAL mode and a connection-level lock.
    """

    def __init__(self, db_path: Union[str, Path], tables: Iterable[str] = MEMORY_TABLES):
        """
        Open or create the memory database.

        Args:
            db_path: SQLite file; parent directories are created
            tables: Record families to provision
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.tables = list(tables)
        self._lock = threading.Lock()

        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=10.0,
        )

        # WAL lets readers proceed during writes
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")

        self._create_tables()

    def _create_tables(self) -> None:
        for table in self.tables:
            self._conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    key TEXT PRIMARY KEY,
                    value BLOB NOT NULL,
                    ts INTEGER NOT NULL
                )
            """)

        self._conn.commit()

    def _check(self, table: str) -> None:
        if table not in self.tables:
            raise KeyError(f"Unknown table: {table}")

    def set(self, table: str, key: str, value: bytes) -> None:
        """Insert or replace one record."""
        self._check(table)
        with self._lock:
            self._conn.execute(
                f"INSERT OR REPLACE INTO {table} (key, value, ts) VALUES (?, ?, ?)",
                (key, value, int(time.time()))
            )
            self._conn.commit()

    def get(self, table: str, key: str) -> Optional[bytes]:
        """
        Fetch one record.

        Returns:
            Stored bytes, or None when the key is absent
        """
        self._check(table)
        with self._lock:
            row = self._conn.execute(
                f"SELECT value FROM {table} WHERE key = ?",
                (key,)
            ).fetchone()

        return row[0] if row else None

    def delete(self, table: str, key: str) -> bool:
        """Remove one record; True if it existed."""
        self._check(table)
        with self._lock:
            cursor = self._conn.execute(
                f"DELETE FROM {table} WHERE key = ?",
                (key,)
            )
            self._conn.commit()
        return cursor.rowcount > 0

    def scan(self, table: str, prefix: str = "") -> List[Tuple[str, bytes]]:
        """
        List (key, value) pairs whose key starts with prefix.

        Args:
            table: Table name
            prefix: Key prefix; empty string scans the whole table

        Returns:
            Pairs ordered by key
        """
        self._check(table)
        with self._lock:
            cursor = self._conn.execute(
                f"SELECT key, value FROM {table} WHERE key >= ? AND key < ? ORDER BY key",
                (prefix, prefix + _PREFIX_END)
            )
            return [(row[0], row[1]) for row in cursor.fetchall()]

    def purge_table(self, table: str) -> int:
        """
        Empty a table.

        Returns:
            Number of records removed
        """
        self._check(table)
        with self._lock:
            count = self._conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            self._conn.execute(f"DELETE FROM {table}")
            self._conn.commit()

        return count

    def stats(self, table: str) -> dict:
        """Record count, payload size and write-time range of a table."""
        self._check(table)
        with self._lock:
            row = self._conn.execute(f"""
                SELECT
                    COUNT(*) as count,
                    SUM(LENGTH(value)) as total_bytes,
                    MIN(ts) as oldest_ts,
                    MAX(ts) as newest_ts
                FROM {table}
            """).fetchone()

        return {
            "count": row[0] or 0,
            "total_bytes": row[1] or 0,
            "oldest_ts": row[2] or 0,
            "newest_ts": row[3] or 0,
        }

    def close(self) -> None:
        """Release the SQLite connection."""
        self._conn.close()
