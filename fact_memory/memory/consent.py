"""
Consent ledger for facts that need explicit user approval.

One active record governs each (user, key). Declines suppress
re-prompting for a cool-down window; approvals persist the pending
fact through the FactStore.
"""

import asyncio
import json
import sqlite3
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import structlog

from fact_memory.eval.telemetry import MetricsSink
from fact_memory.persist.backend import KVBackend
from .errors import StorageError
from .policy import PolicyEngine, parse_duration
from .schemas import (
    Clock,
    ConsentPrompt,
    ConsentRecord,
    ConsentStats,
    MemoryItem,
    MemoryItemInput,
    RiskLevel,
    utcnow,
)
from .store import FactStore

logger = structlog.get_logger(__name__)


class ConsentLedger:
    """
    Per-user approve/decline decisions plus pending consent prompts.

    Tables:
    - consent: <user>:<key> → ConsentRecord JSON
    - pending: <user>:<key> → candidate awaiting a decision
    """

    def __init__(
        self,
        kv: KVBackend,
        store: FactStore,
        policy: Optional[PolicyEngine] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsSink] = None,
    ):
        """
        Initialize consent ledger.

        Args:
            kv: Storage backend shared with the FactStore
            store: FactStore used to persist approved facts
            policy: Policy engine (blacklist window, TTLs, sanitizer)
            clock: Time source (injectable for tests)
            metrics: Optional event sink
        """
        self.kv = kv
        self.store = store
        self.policy = policy or store.policy
        self.clock = clock
        self.metrics = metrics
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def blacklist_window(self) -> timedelta:
        return timedelta(hours=self.policy.cfg.blacklist_hours)

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    @staticmethod
    def _key(user_id: str, key: str) -> str:
        return f"{quote(user_id, safe='')}:{key}"

    @staticmethod
    def _prefix(user_id: str) -> str:
        return f"{quote(user_id, safe='')}:"

    def _persist(self, fn, *args):
        try:
            return fn(*args)
        except (sqlite3.Error, OSError) as e:
            logger.error("consent_storage_failure", error=str(e))
            raise StorageError(f"Consent ledger write failed: {e}") from e

    def _load_record(self, user_id: str, key: str) -> Optional[ConsentRecord]:
        raw = self._persist(self.kv.get, "consent", self._key(user_id, key))
        if raw is None:
            return None
        return ConsentRecord.model_validate(json.loads(raw))

    def _user_records(self, user_id: str) -> List[ConsentRecord]:
        rows = self._persist(self.kv.scan, "consent", self._prefix(user_id))
        return [ConsentRecord.model_validate(json.loads(raw)) for _, raw in rows]

    async def is_blacklisted(self, user_id: str, key: str) -> bool:
        """
        Check whether a key is suppressed for a user.

        Re-checks expires_at on every read, so correctness does not depend
        on the cleanup sweep.
        """
        record = self._load_record(user_id, key)
        return record is not None and record.is_active_blacklist(self.clock())

    async def decide(
        self,
        user_id: str,
        key: str,
        type: str,
        approved: bool,
        value: Optional[str] = None,
        person: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> Tuple[ConsentRecord, Optional[MemoryItem]]:
        """
        Record a decision and, on approval, persist the fact.

        The fact value comes from the arguments or, if omitted, from the
        pending prompt registered for this key.

        Returns:
            (new consent record, saved item or None)

        Raises:
            StorageError: If the decision or the fact cannot be persisted
        """
        async with self._lock(user_id):
            now = self.clock()
            record_key = self._key(user_id, key)

            pending = None
            raw_pending = self._persist(self.kv.get, "pending", record_key)
            if raw_pending is not None:
                pending = json.loads(raw_pending)

            if approved and value is None and pending is not None:
                value = pending["value"]
                person = person if person is not None else pending.get("person")
                confidence = confidence if confidence is not None else pending.get("confidence")
                type = pending.get("type", type)

            # Fact first: a failed save leaves the pending prompt and prior decision untouched
            item = None
            if approved and value is not None:
                item = await self.store.upsert(
                    user_id,
                    MemoryItemInput(
                        type=type,
                        key=key,
                        value=value,
                        person=person,
                        confidence=confidence if confidence is not None else 1.0,
                    ),
                )

            record = ConsentRecord(
                user_id=user_id,
                key=key,
                type=type,
                decision="approved" if approved else "declined",
                timestamp=now,
                expires_at=None if approved else now + self.blacklist_window,
            )
            payload = json.dumps(record.model_dump(mode="json")).encode("utf-8")
            self._persist(self.kv.set, "consent", record_key, payload)
            self._persist(self.kv.delete, "pending", record_key)

        if self.metrics is not None:
            self.metrics.log_consent(user_id, key, record.decision)
        logger.info("consent_recorded", user_id=user_id, key=key, decision=record.decision)

        if item is not None:
            if self.metrics is not None:
                self.metrics.log_save(user_id, key, "user", item.confidence, "medium")
        elif approved:
            logger.warning("consent_approved_without_value", user_id=user_id, key=key)
        return record, item

    async def record_consent(self, user_id: str, key: str, type: str, approved: bool) -> bool:
        """
        Record an approve/decline decision.

        Declines blacklist the key for the configured window. Approvals
        replace any prior record and save the pending fact, if any.

        Returns:
            True once the decision is persisted
        """
        await self.decide(user_id, key, type, approved)
        return True

    def question_for(self, key: str, value: str, type: str) -> str:
        """Human-readable consent question for a fact type."""
        if type == "contact":
            return f'Soll ich mir deine Kontaktinformation "{key}: {value}" merken?'
        if type == "task_hint":
            ttl = self.policy.default_ttl(type)
            if ttl is None:
                return f'Soll ich mir dauerhaft merken: "{key}: {value}"?'
            days = parse_duration(ttl).days
            return f'Soll ich mir für {days} Tage merken: "{key}: {value}"?'
        if type == "preference":
            return f'Soll ich mir deine Präferenz "{key}: {value}" dauerhaft merken?'
        return f"Soll ich mir merken, dass {key}: {value}?"

    async def create_consent_prompt(
        self,
        user_id: str,
        key: str,
        value: str,
        type: str,
        risk: RiskLevel,
        person: Optional[str] = None,
        confidence: Optional[float] = None,
    ) -> ConsentPrompt:
        """
        Build a consent prompt and register the candidate as pending.

        The question text is passed through the policy sanitizer; the
        pending value is kept verbatim so approval stores the real fact.
        """
        blacklisted = await self.is_blacklisted(user_id, key)

        if not blacklisted:
            pending = {
                "type": type,
                "value": value,
                "person": person,
                "confidence": confidence,
                "created_at": self.clock().isoformat(),
            }
            self._persist(
                self.kv.set,
                "pending",
                self._key(user_id, key),
                json.dumps(pending, ensure_ascii=False).encode("utf-8"),
            )

        question = self.policy.sanitize_text(self.question_for(key, value, type))
        return ConsentPrompt(
            user_id=user_id,
            key=key,
            value=self.policy.sanitize_text(value),
            type=type,
            risk=risk,
            question=question,
            is_blacklisted=blacklisted,
            person=person,
        )

    async def get_pending(self, user_id: str, key: str) -> Optional[dict]:
        raw = self._persist(self.kv.get, "pending", self._key(user_id, key))
        return json.loads(raw) if raw is not None else None

    async def get_consent_history(self, user_id: str, include_expired: bool = False) -> List[ConsentRecord]:
        """
        List a user's consent records, newest first.

        Args:
            include_expired: Also return declines whose blacklist has lapsed
        """
        now = self.clock()
        records = self._user_records(user_id)
        if not include_expired:
            records = [r for r in records if r.expires_at is None or now <= r.expires_at]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records

    async def cleanup_expired(self) -> int:
        """
        Remove lapsed decline records across all users.

        Returns:
            Number of records removed
        """
        now = self.clock()
        removed = 0
        for record_key, raw in self._persist(self.kv.scan, "consent", ""):
            record = ConsentRecord.model_validate(json.loads(raw))
            if record.expires_at is not None and now > record.expires_at:
                self._persist(self.kv.delete, "consent", record_key)
                removed += 1

        logger.info("consent_cleanup_completed", removed=removed)
        return removed

    async def clear_user_consent(self, user_id: str) -> int:
        """
        Delete every consent record and pending prompt of a user.

        Returns:
            Number of consent records deleted
        """
        async with self._lock(user_id):
            prefix = self._prefix(user_id)
            records = self._persist(self.kv.scan, "consent", prefix)
            for record_key, _ in records:
                self._persist(self.kv.delete, "consent", record_key)
            for pending_key, _ in self._persist(self.kv.scan, "pending", prefix):
                self._persist(self.kv.delete, "pending", pending_key)
        return len(records)

    async def get_consent_stats(self, user_id: str) -> ConsentStats:
        """Counts of approvals, declines and active blacklists for a user."""
        now = self.clock()
        records = self._user_records(user_id)
        return ConsentStats(
            total_records=len(records),
            approved=sum(1 for r in records if r.decision == "approved"),
            declined=sum(1 for r in records if r.decision == "declined"),
            active_blacklists=sum(1 for r in records if r.is_active_blacklist(now)),
        )
