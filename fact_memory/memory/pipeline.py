"""
Memory pipeline orchestration.

Wires extraction, policy, consent, storage and recall into the
utterance → candidate → decision → store flow.
"""

from pathlib import Path
from typing import List, Optional, Union

import structlog

from fact_memory.config.settings import Settings
from fact_memory.eval.telemetry import MetricsSink
from fact_memory.generation.generator import BaseGenerator
from fact_memory.persist.backend import KVBackend
from fact_memory.persist.sqlite_store import KVStore
from .consent import ConsentLedger
from .errors import PolicyRejected
from .extractor import FactExtractor
from .guardrails import RateLimiter
from .policy import PolicyEngine
from .recall import MemoryRetriever
from .schemas import (
    Candidate,
    Clock,
    EvaluationResult,
    ExtractionResult,
    MemoryContext,
    MemoryItem,
    MemoryItemInput,
    RejectedCandidate,
    RiskLevel,
    utcnow,
)
from .store import GLOBAL_USER_ID, FactStore
from .summarizer import MemorySummarizer

logger = structlog.get_logger(__name__)

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}


def _max_risk(a: RiskLevel, b: RiskLevel) -> RiskLevel:
    return a if _RISK_ORDER[a] >= _RISK_ORDER[b] else b


class MemoryPipeline:
    """
    Integration layer for the memory engine.

    Provides:
    - Utterance evaluation (extract → classify → save/ask/reject)
    - Document ingestion into a user or the global knowledge partition
    - Consent resolution for pending prompts
    - Prompt-context retrieval
    - Deletion and full user wipe
    """

    def __init__(
        self,
        store: FactStore,
        extractor: FactExtractor,
        policy: PolicyEngine,
        consent: ConsentLedger,
        retriever: MemoryRetriever,
        summarizer: MemorySummarizer,
        metrics: Optional[MetricsSink] = None,
    ):
        """
        Initialize memory pipeline.

        Args:
            store: Fact store
            extractor: Candidate extractor
            policy: Privacy policy engine
            consent: Consent ledger
            retriever: Memory retriever
            summarizer: Memory summarizer
            metrics: Optional event sink
        """
        self.store = store
        self.extractor = extractor
        self.policy = policy
        self.consent = consent
        self.retriever = retriever
        self.summarizer = summarizer
        self.metrics = metrics

    def _reject(
        self,
        result: EvaluationResult,
        user_id: str,
        candidate: Candidate,
        reason: str,
        rule: Optional[str] = None,
    ) -> None:
        result.rejected.append(RejectedCandidate(candidate=candidate, reason=reason, rule=rule))
        if self.metrics is not None:
            self.metrics.log_reject(user_id, candidate.key, reason, candidate.confidence)
        logger.info(
            "candidate_rejected",
            user_id=user_id,
            key=candidate.key,
            reason=reason,
            rule=rule,
        )

    async def _save(
        self,
        result: EvaluationResult,
        user_id: str,
        candidate: Candidate,
        kind: str,
        risk: RiskLevel,
    ) -> None:
        item = await self.store.upsert(user_id, MemoryItemInput.from_candidate(candidate))
        result.saved.append(item)
        if self.metrics is not None:
            self.metrics.log_save(user_id, candidate.key, kind, candidate.confidence, risk)

    def _log_extraction(self, user_id: str, extraction: ExtractionResult) -> None:
        if self.metrics is not None:
            self.metrics.log_extract(
                user_id,
                extraction.status,
                len(extraction.candidates),
                extraction.reason,
            )

    async def evaluate_and_store(self, text: str, user_id: str) -> EvaluationResult:
        """
        Extract candidates from an utterance and apply the decision ladder.

        Per candidate:
        1. type not allowed → reject (policy)
        2. key blacklisted by a recent decline → reject (blacklisted)
        3. high risk → reject (pii)
        4. low risk, auto-save type, confidence ≥ auto threshold → save
        5. confidence ≥ suggest threshold → consent prompt
        6. otherwise → reject (low_score)

        Args:
            text: Raw utterance
            user_id: Speaking user

        Returns:
            EvaluationResult with saved items, prompts and rejections

        Raises:
            RateLimited: If extraction is throttled for the user
            StorageError: If a save or prompt cannot be persisted
        """
        extraction = await self.extractor.extract(text, user_id)
        self._log_extraction(user_id, extraction)

        result = EvaluationResult(degraded=extraction.degraded, degraded_reason=extraction.reason)
        cfg = self.policy.cfg

        for candidate in extraction.candidates:
            if not self.policy.is_allowed_type(candidate.type):
                self._reject(result, user_id, candidate, "policy", rule="type_not_allowed")
                continue

            if await self.consent.is_blacklisted(user_id, candidate.key):
                self._reject(result, user_id, candidate, "blacklisted")
                continue

            fact_text = f"{candidate.key} {candidate.value}"
            try:
                fact_risk = self.policy.enforce(fact_text, candidate.type)
                risk = _max_risk(self.policy.enforce(text, "preference"), fact_risk)
            except PolicyRejected as e:
                self._reject(result, user_id, candidate, e.reason, rule=e.rule)
                continue

            if (
                risk == "low"
                and self.policy.can_auto_save(candidate.type)
                and candidate.confidence >= cfg.auto_save_threshold
            ):
                await self._save(result, user_id, candidate, "auto", risk)
                continue

            if candidate.confidence >= cfg.suggest_threshold:
                prompt = await self.consent.create_consent_prompt(
                    user_id,
                    candidate.key,
                    candidate.value,
                    candidate.type,
                    risk,
                    person=candidate.person,
                    confidence=candidate.confidence,
                )
                result.suggestions.append(prompt)
                if self.metrics is not None:
                    self.metrics.log_ask(user_id, candidate.key, candidate.confidence)
                continue

            self._reject(result, user_id, candidate, "low_score")

        logger.info(
            "utterance_evaluated",
            user_id=user_id,
            saved=len(result.saved),
            suggested=len(result.suggestions),
            rejected=len(result.rejected),
            degraded=result.degraded,
        )
        return result

    async def evaluate_batch(self, texts: List[str], user_id: str) -> List[EvaluationResult]:
        """Evaluate several utterances of one user in order."""
        results = []
        for text in texts:
            results.append(await self.evaluate_and_store(text, user_id))
        return results

    async def ingest_document(self, chunk: str, target_id: str = GLOBAL_USER_ID) -> EvaluationResult:
        """
        Extract and store technical facts from a document chunk.

        Documents bypass consent: high-risk candidates are rejected and
        the rest are saved when confident enough.

        Args:
            chunk: Plain-text chunk
            target_id: Owning user or the global knowledge partition

        Raises:
            RateLimited: If document extraction is throttled for target_id
        """
        extraction = await self.extractor.extract_document(chunk, target_id)
        self._log_extraction(target_id, extraction)

        result = EvaluationResult(degraded=extraction.degraded, degraded_reason=extraction.reason)
        threshold = self.policy.cfg.document_save_threshold

        for candidate in extraction.candidates:
            if not self.policy.is_allowed_type(candidate.type, document=True):
                self._reject(result, target_id, candidate, "policy", rule="type_not_allowed")
                continue

            fact_text = f"{candidate.key} {candidate.value}"
            try:
                risk = self.policy.enforce(fact_text, candidate.type)
            except PolicyRejected as e:
                self._reject(result, target_id, candidate, e.reason, rule=e.rule)
                continue

            if candidate.confidence < threshold:
                self._reject(result, target_id, candidate, "low_score")
                continue

            await self._save(result, target_id, candidate, "document", risk)

        logger.info(
            "document_ingested",
            target_id=target_id,
            saved=len(result.saved),
            rejected=len(result.rejected),
            degraded=result.degraded,
        )
        return result

    async def resolve_consent(
        self,
        user_id: str,
        key: str,
        approved: bool,
        type: Optional[str] = None,
    ) -> Optional[MemoryItem]:
        """
        Apply the user's answer to a consent prompt.

        Args:
            user_id: Answering user
            key: Fact key of the prompt
            approved: True to store the fact, False to blacklist the key
            type: Memory type; defaults to the pending prompt's type

        Returns:
            The saved MemoryItem on approval, else None

        Raises:
            ValueError: If no type is given and no prompt is pending
        """
        if type is None:
            pending = await self.consent.get_pending(user_id, key)
            if pending is None:
                raise ValueError(f"No pending consent prompt for key {key!r}")
            type = pending["type"]

        _, item = await self.consent.decide(user_id, key, type, approved)
        return item

    async def retrieve_for_prompt(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
    ) -> MemoryContext:
        """Ranked memories and rendered context block for a query."""
        return await self.retriever.retrieve_for_prompt(user_id, query, limit)

    async def list_memories(self, user_id: str) -> List[MemoryItem]:
        return await self.store.list_by_user(user_id)

    async def delete_memory(self, user_id: str, item_id: str) -> bool:
        """
        Delete one memory of the requesting user.

        Raises:
            Unauthorized: If the memory belongs to someone else
        """
        deleted = await self.store.remove(user_id, item_id)
        if deleted and self.metrics is not None:
            self.metrics.emit("delete", user_id, count=1)
        return deleted

    async def wipe_user(self, user_id: str) -> int:
        """
        Delete all memories, consent records and pending prompts of a user.

        Returns:
            Number of memories deleted
        """
        count = await self.store.clear_user(user_id)
        await self.consent.clear_user_consent(user_id)
        if self.metrics is not None:
            self.metrics.emit("delete", user_id, count=count)
        logger.info("user_wiped", user_id=user_id, memories=count)
        return count


def create_memory_pipeline(
    settings: Optional[Settings] = None,
    generator: Optional[BaseGenerator] = None,
    kv: Optional[KVBackend] = None,
    db_path: Union[str, Path, None] = None,
    metrics: Optional[MetricsSink] = None,
    clock: Clock = utcnow,
) -> MemoryPipeline:
    """
    Factory function to create a memory pipeline.

    Args:
        settings: Settings (defaults to Settings())
        generator: Generation collaborator; None runs pattern rules only
        kv: Storage backend; defaults to a KVStore at db_path or settings.paths.memory_db
        db_path: SQLite path used when kv is not given
        metrics: Event sink; defaults to one writing settings.paths.metrics_log
        clock: Time source shared by every component

    Returns:
        Wired MemoryPipeline
    """
    settings = settings or Settings()

    if kv is None:
        kv = KVStore(db_path or settings.paths.memory_db)
    if metrics is None:
        metrics = MetricsSink(settings.paths.metrics_log, clock=clock)

    policy = PolicyEngine(settings.policy)
    store = FactStore(kv, policy, clock=clock, metrics=metrics)
    extraction = settings.extraction
    extractor = FactExtractor(
        generator=generator,
        cfg=extraction,
        rate_limiter=RateLimiter(extraction.rate_limit_requests, extraction.rate_limit_window_s),
        document_rate_limiter=RateLimiter(
            extraction.document_rate_limit_requests, extraction.rate_limit_window_s
        ),
    )
    consent = ConsentLedger(kv, store, policy, clock=clock, metrics=metrics)
    retriever = MemoryRetriever(store, settings.retrieval, metrics=metrics)
    summarizer = MemorySummarizer(store, settings.summarizer, clock=clock, metrics=metrics)

    return MemoryPipeline(store, extractor, policy, consent, retriever, summarizer, metrics)
