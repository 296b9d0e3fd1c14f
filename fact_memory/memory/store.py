"""
Memory persistence layer over a key-indexed backend.

Stores MemoryItem records per user with upsert-by-identity and lazy
TTL filtering.
"""

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional
from urllib.parse import quote, unquote

import structlog

from fact_memory.eval.telemetry import MetricsSink
from fact_memory.persist.backend import KVBackend
from .errors import StorageError, Unauthorized
from .policy import PolicyEngine
from .schemas import Clock, MemoryItem, MemoryItemInput, MemoryStats, utcnow

logger = structlog.get_logger(__name__)

# Pseudo-user that owns knowledge extracted from shared documents
GLOBAL_USER_ID = "__global__"


def _user_part(user_id: str) -> str:
    return quote(user_id, safe="")


class FactStore:
    """
    Persistent storage for memory items.

    Uses three backend tables:
    - memories: <user>:<id> → MemoryItem JSON
    - identity: <user>:<type>:<key>:<person> → id
    - owners: <id> → user

    Features:
    - At most one live item per (user, type, key, person)
    - Expired items are invisible to reads and purged lazily or by sweep
    - Per-user mutual exclusion around every mutation
    """

    def __init__(
        self,
        kv: KVBackend,
        policy: Optional[PolicyEngine] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsSink] = None,
    ):
        """
        Initialize fact store.

        Args:
            kv: Storage backend (KVStore or MemoryKV)
            policy: Policy engine used for default TTLs
            clock: Time source (injectable for tests)
            metrics: Optional event sink
        """
        self.kv = kv
        self.policy = policy or PolicyEngine()
        self.clock = clock
        self.metrics = metrics
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Convert backend failures into StorageError."""
        try:
            yield
        except (sqlite3.Error, OSError) as e:
            logger.error("fact_store_failure", operation=operation, error=str(e))
            if self.metrics is not None:
                self.metrics.log_error(f"fact_store.{operation}", str(e))
            raise StorageError(f"Fact store {operation} failed: {e}") from e

    @staticmethod
    def _memory_key(user_id: str, item_id: str) -> str:
        return f"{_user_part(user_id)}:{item_id}"

    @staticmethod
    def _identity_key(user_id: str, type: str, key: str, person: Optional[str]) -> str:
        return f"{_user_part(user_id)}:{type}:{key}:{person or ''}"

    def _load(self, user_id: str, item_id: str) -> Optional[MemoryItem]:
        raw = self.kv.get("memories", self._memory_key(user_id, item_id))
        if raw is None:
            return None
        return self._decode(raw)

    @staticmethod
    def _decode(raw: bytes) -> Optional[MemoryItem]:
        try:
            return MemoryItem.from_storage_dict(json.loads(raw))
        except ValueError as e:
            logger.warning("fact_store_corrupt_record", error=str(e))
            return None

    def _write(self, item: MemoryItem) -> None:
        payload = json.dumps(item.to_storage_dict(), ensure_ascii=False).encode("utf-8")
        self.kv.set("memories", self._memory_key(item.user_id, item.id), payload)
        self.kv.set(
            "identity",
            self._identity_key(item.user_id, item.type, item.key, item.person),
            item.id.encode("utf-8"),
        )
        self.kv.set("owners", item.id, item.user_id.encode("utf-8"))

    def _purge(self, item: MemoryItem) -> None:
        self.kv.delete("memories", self._memory_key(item.user_id, item.id))
        ident = self._identity_key(item.user_id, item.type, item.key, item.person)
        current = self.kv.get("identity", ident)
        if current is not None and current.decode("utf-8") == item.id:
            self.kv.delete("identity", ident)
        self.kv.delete("owners", item.id)

    def _scan_user(self, user_id: str) -> List[MemoryItem]:
        items = []
        for _, raw in self.kv.scan("memories", f"{_user_part(user_id)}:"):
            item = self._decode(raw)
            if item is not None:
                items.append(item)
        return items

    async def upsert(self, user_id: str, item: MemoryItemInput) -> MemoryItem:
        """
        Insert or update a memory item by identity.

        Args:
            user_id: Owning user
            item: Fields to store; ttl "policy" uses the type default

        Returns:
            The created or updated MemoryItem

        Raises:
            StorageError: If the backend write fails
        """
        async with self._lock(user_id):
            now = self.clock()
            expires_at = self.policy.expires_at(item.type, now, item.ttl)

            with self._guard("upsert"):
                ident = self._identity_key(user_id, item.type, item.key, item.person)
                existing_id = self.kv.get("identity", ident)
                existing = self._load(user_id, existing_id.decode("utf-8")) if existing_id else None

                if existing is not None and not existing.is_expired(now):
                    stored = existing.model_copy(update={
                        "value": item.value,
                        "confidence": item.confidence,
                        "updated_at": now,
                        "expires_at": expires_at,
                    })
                else:
                    if existing is not None:
                        self._purge(existing)
                    stored = MemoryItem(
                        user_id=user_id,
                        type=item.type,
                        key=item.key,
                        value=item.value,
                        person=item.person,
                        confidence=item.confidence,
                        created_at=now,
                        updated_at=now,
                        expires_at=expires_at,
                    )

                self._write(stored)

        logger.debug("memory_upserted", user_id=user_id, item_id=stored.id, type=stored.type, key=stored.key)
        return stored

    async def list_by_user(self, user_id: str) -> List[MemoryItem]:
        """
        List live memory items for a user, most recently updated first.

        Args:
            user_id: User identifier

        Returns:
            Items whose expires_at has not passed
        """
        now = self.clock()
        with self._guard("list"):
            items = self._scan_user(user_id)

        live = [i for i in items if not i.is_expired(now)]
        live.sort(key=lambda i: i.updated_at, reverse=True)
        return live

    async def get(self, user_id: str, item_id: str) -> Optional[MemoryItem]:
        """
        Retrieve a live memory item by ID.

        Returns:
            MemoryItem if found and not expired, else None
        """
        with self._guard("get"):
            item = self._load(user_id, item_id)
        if item is None or item.is_expired(self.clock()):
            return None
        return item

    def _check_owner(self, user_id: str, item_id: str) -> bool:
        owner = self.kv.get("owners", item_id)
        if owner is None:
            return False
        if owner.decode("utf-8") != user_id:
            raise Unauthorized(user_id, item_id)
        return True

    async def remove(self, user_id: str, item_id: str) -> bool:
        """
        Delete a memory item.

        Args:
            user_id: Requesting user
            item_id: Memory identifier

        Returns:
            True if deleted, False if not found

        Raises:
            Unauthorized: If the item belongs to another user
        """
        async with self._lock(user_id):
            with self._guard("remove"):
                if not self._check_owner(user_id, item_id):
                    return False
                item = self._load(user_id, item_id)
                if item is None:
                    self.kv.delete("owners", item_id)
                    return False
                self._purge(item)

        logger.info("memory_removed", user_id=user_id, item_id=item_id)
        return True

    async def update(
        self,
        user_id: str,
        item_id: str,
        value: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> Optional[MemoryItem]:
        """
        Edit value or confidence of a live item in place.

        expires_at is kept; identity fields cannot change.

        Returns:
            Updated item, or None if not found or expired

        Raises:
            Unauthorized: If the item belongs to another user
        """
        async with self._lock(user_id):
            now = self.clock()
            with self._guard("update"):
                if not self._check_owner(user_id, item_id):
                    return None
                item = self._load(user_id, item_id)
                if item is None or item.is_expired(now):
                    return None

                changes = {"updated_at": now}
                if value is not None:
                    changes["value"] = value
                if confidence is not None:
                    changes["confidence"] = confidence
                updated = MemoryItem.model_validate({**item.model_dump(), **changes})
                self._write(updated)

        return updated

    async def clear_user(self, user_id: str) -> int:
        """
        Delete every memory of a user.

        Returns:
            Number of records deleted
        """
        async with self._lock(user_id):
            with self._guard("clear"):
                items = self._scan_user(user_id)
                for item in items:
                    self._purge(item)

        logger.info("memories_cleared", user_id=user_id, count=len(items))
        return len(items)

    async def expire_sweep(self) -> int:
        """
        Physically remove expired items across all users.

        Returns:
            Number of expired items removed
        """
        now = self.clock()
        removed_by_user: Dict[str, int] = {}

        with self._guard("expire_sweep"):
            for _, raw in self.kv.scan("memories"):
                item = self._decode(raw)
                if item is None or not item.is_expired(now):
                    continue
                async with self._lock(item.user_id):
                    current = self._load(item.user_id, item.id)
                    if current is None or not current.is_expired(now):
                        continue
                    self._purge(current)
                removed_by_user[item.user_id] = removed_by_user.get(item.user_id, 0) + 1

        if self.metrics is not None:
            for user_id, count in removed_by_user.items():
                self.metrics.log_expire(user_id, count)

        total = sum(removed_by_user.values())
        logger.info("expire_sweep_completed", removed=total, users=len(removed_by_user))
        return total

    async def get_stats(self, user_id: str) -> MemoryStats:
        """
        Count a user's memories by type and person.

        Expired items are counted separately and excluded from the rest.
        """
        now = self.clock()
        with self._guard("stats"):
            items = self._scan_user(user_id)

        stats = MemoryStats()
        for item in items:
            if item.is_expired(now):
                stats.expired += 1
                continue
            stats.total += 1
            stats.by_type[item.type] = stats.by_type.get(item.type, 0) + 1
            person = item.person or "self"
            stats.by_person[person] = stats.by_person.get(person, 0) + 1
        return stats

    async def search(self, user_id: str, text: str) -> List[MemoryItem]:
        """Case-insensitive substring search over key, value and person."""
        needle = text.lower().strip()
        items = await self.list_by_user(user_id)
        if not needle:
            return items
        return [
            i for i in items
            if needle in i.key.lower()
            or needle in i.value.lower()
            or needle in (i.person or "").lower()
        ]

    async def list_users(self) -> List[str]:
        """Distinct users that currently own at least one stored record."""
        with self._guard("list_users"):
            keys = [k for k, _ in self.kv.scan("memories")]
        users = {unquote(k.rsplit(":", 1)[0]) for k in keys}
        return sorted(users)
