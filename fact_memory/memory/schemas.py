"""
Memory system data models.

Defines candidates, persisted memory items, consent records and the
result types returned by the extraction and evaluation pipeline.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple
import uuid

from pydantic import BaseModel, Field


# Type aliases
MemoryType = Literal["preference", "profile_fact", "contact", "task_hint", "fact"]
RiskLevel = Literal["low", "medium", "high"]
ConsentDecision = Literal["approved", "declined"]
RejectReason = Literal["policy", "pii", "low_score", "blacklisted"]

CONVERSATION_TYPES: Tuple[str, ...] = ("preference", "profile_fact", "contact", "task_hint")
DOCUMENT_TYPES: Tuple[str, ...] = CONVERSATION_TYPES + ("fact",)

# Sentinel for MemoryItemInput.ttl: use the policy default for the type
POLICY_TTL = "policy"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_memory_id() -> str:
    """Generate a unique memory identifier."""
    return f"mem_{uuid.uuid4().hex[:16]}"


class Candidate(BaseModel):
    """An extracted, not yet validated fact proposal."""

    person: Optional[str] = Field(None, description="'self' or a normalized name slug")
    type: MemoryType
    key: str
    value: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class MemoryItemInput(BaseModel):
    """Caller-supplied fields for an upsert."""

    type: MemoryType
    key: str
    value: str
    person: Optional[str] = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    ttl: Optional[str] = Field(
        POLICY_TTL,
        description="ISO-8601 duration, None for permanent, or 'policy' for the type default",
    )

    @classmethod
    def from_candidate(cls, candidate: Candidate, **kwargs: Any) -> "MemoryItemInput":
        """Build an upsert input from an extracted candidate."""
        return cls(
            type=candidate.type,
            key=candidate.key,
            value=candidate.value,
            person=candidate.person,
            confidence=candidate.confidence,
            **kwargs,
        )


class MemoryItem(BaseModel):
    """
    A persisted, policy-approved fact.

    At most one live item exists per (user_id, type, key, person).
    expires_at of None means the item never expires.
    """

    id: str = Field(default_factory=new_memory_id)
    user_id: str
    type: MemoryType
    key: str
    value: str
    person: Optional[str] = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "mem_3f2a9c0d1b7e4a55",
                "user_id": "u1",
                "type": "preference",
                "key": "lieblingsfarbe",
                "value": "blau",
                "person": "self",
                "confidence": 0.9,
                "created_at": "2024-05-01T10:00:00+00:00",
                "updated_at": "2024-05-01T10:00:00+00:00",
                "expires_at": None,
            }
        }

    @property
    def identity(self) -> Tuple[str, str, str, str]:
        """Upsert identity (user_id, type, key, person)."""
        return (self.user_id, self.type, self.key, self.person or "")

    def is_expired(self, now: datetime) -> bool:
        """True once expires_at has passed."""
        return self.expires_at is not None and now > self.expires_at

    def to_storage_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dict for storage."""
        return self.model_dump(mode="json")

    @classmethod
    def from_storage_dict(cls, data: Dict[str, Any]) -> "MemoryItem":
        """Load from storage dict."""
        return cls.model_validate(data)

    def line(self) -> str:
        """Render as a single prompt-context line."""
        if self.person and self.person != "self":
            return f"- {self.person}: {self.key} = {self.value}"
        return f"- {self.key}: {self.value}"


class ConsentRecord(BaseModel):
    """A user's approve/decline decision for a fact key."""

    user_id: str
    key: str
    type: MemoryType
    decision: ConsentDecision
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = Field(None, description="Blacklist window end (declined only)")

    def is_active_blacklist(self, now: datetime) -> bool:
        """True while a decline is still suppressing re-prompts."""
        return (
            self.decision == "declined"
            and self.expires_at is not None
            and now <= self.expires_at
        )


class ConsentPrompt(BaseModel):
    """Consent question surfaced to a UI collaborator."""

    user_id: str
    key: str
    value: str
    type: MemoryType
    risk: RiskLevel
    question: str
    is_blacklisted: bool = False
    person: Optional[str] = None


class ExtractionResult(BaseModel):
    """Outcome of extraction; degraded when the pattern fallback produced it."""

    status: Literal["ok", "degraded"] = "ok"
    candidates: List[Candidate] = Field(default_factory=list)
    reason: Optional[str] = None

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"

    @classmethod
    def ok(cls, candidates: List[Candidate]) -> "ExtractionResult":
        return cls(status="ok", candidates=candidates)

    @classmethod
    def fallback(cls, candidates: List[Candidate], reason: str) -> "ExtractionResult":
        return cls(status="degraded", candidates=candidates, reason=reason)


class RejectedCandidate(BaseModel):
    """A candidate that was dropped, with the reason for auditing."""

    candidate: Candidate
    reason: RejectReason
    rule: Optional[str] = None


class EvaluationResult(BaseModel):
    """What the pipeline did with each candidate of one utterance."""

    saved: List[MemoryItem] = Field(default_factory=list)
    suggestions: List[ConsentPrompt] = Field(default_factory=list)
    rejected: List[RejectedCandidate] = Field(default_factory=list)
    degraded: bool = False
    degraded_reason: Optional[str] = None


class MemoryContext(BaseModel):
    """Ranked memories plus the rendered prompt block."""

    context: str = ""
    relevant: List[MemoryItem] = Field(default_factory=list)


class MemoryStats(BaseModel):
    """Per-user store statistics."""

    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_person: Dict[str, int] = Field(default_factory=dict)
    expired: int = 0


class ConsentStats(BaseModel):
    """Per-user consent ledger statistics."""

    total_records: int = 0
    approved: int = 0
    declined: int = 0
    active_blacklists: int = 0


class MemoryCluster(BaseModel):
    """A group of related memories proposed for consolidation."""

    type: MemoryType
    person: Optional[str] = None
    group: str
    keep_id: str
    item_ids: List[str] = Field(default_factory=list)
    keys: List[str] = Field(default_factory=list)


class SummarizationStats(BaseModel):
    """Outcome of a consolidation run."""

    user_id: str
    clusters_found: int = 0
    memories_archived: int = 0
    summaries_created: int = 0
    clusters: List[MemoryCluster] = Field(default_factory=list)
