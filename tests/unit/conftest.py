"""
Shared fixtures for unit tests.
"""
import pytest

from fact_memory.persist.sqlite_store import KVStore


@pytest.fixture
def kv(tmp_path):
    """Create a temporary KVStore instance."""
    db_path = tmp_path / "memory.db"
    store = KVStore(db_path)
    yield store
    store.close()

