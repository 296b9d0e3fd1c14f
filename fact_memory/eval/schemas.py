"""
Pydantic schemas for memory telemetry.
"""

from pydantic import BaseModel, Field
from typing import List, Literal, Optional


EventType = Literal[
    "save", "ask", "reject", "retrieve", "expire", "error",
    "summarize", "consent", "extract", "delete",
]


class MetricEvent(BaseModel):
    """One line of the NDJSON event log. Only fields relevant to the type are set."""

    type: EventType
    ts: float
    user_id: Optional[str] = None
    key: Optional[str] = None
    kind: Optional[Literal["auto", "user", "document"]] = None
    score: Optional[float] = None
    risk: Optional[str] = None
    reason: Optional[str] = None
    query_hash: Optional[str] = None
    returned: Optional[int] = None
    latency_ms: Optional[float] = None
    count: Optional[int] = None
    where: Optional[str] = None
    message: Optional[str] = None
    cluster_size: Optional[int] = None
    archived: Optional[int] = None
    decision: Optional[str] = None
    status: Optional[str] = None


class KeyCount(BaseModel):
    key: str
    count: int


class MemoryKPIs(BaseModel):
    """Aggregated quality and usage indicators over a time window."""

    total_saved: int = 0
    auto_save_rate: float = 0.0
    ask_rate: float = 0.0
    reject_rate: float = 0.0
    avg_score_saved: float = 0.0
    avg_score_rejected: float = 0.0
    retrievals: int = 0
    avg_relevant_count: float = 0.0
    latency_p50: float = 0.0
    latency_p95: float = 0.0
    top_keys: List[KeyCount] = Field(default_factory=list)
    errors: int = 0
    expired: int = 0
    degraded_extractions: int = 0
    consents_approved: int = 0
    consents_declined: int = 0
    summaries_created: int = 0
    memories_archived: int = 0
