"""
Memory subsystem for privacy-governed personal facts.

Provides:
- Candidate extraction (LLM with deterministic pattern fallback)
- Risk classification and type policy
- Consent ledger with decline blacklisting
- Fact storage with type-based TTL
- Similarity-ranked recall for prompt injection
- Consolidation of related old memories
"""

from .schemas import (
    Candidate,
    MemoryItem,
    MemoryItemInput,
    ConsentRecord,
    ConsentPrompt,
    ExtractionResult,
    EvaluationResult,
    MemoryContext,
    MemoryStats,
    ConsentStats,
    MemoryCluster,
    SummarizationStats,
)
from .errors import (
    FactMemoryError,
    RateLimited,
    GenerationUnavailable,
    ParseError,
    PolicyRejected,
    Unauthorized,
    StorageError,
)
from .policy import PolicyEngine
from .extractor import FactExtractor
from .guardrails import RateLimiter
from .store import FactStore, GLOBAL_USER_ID
from .consent import ConsentLedger
from .recall import MemoryRetriever
from .summarizer import MemorySummarizer
from .pipeline import MemoryPipeline, create_memory_pipeline

__all__ = [
    "Candidate",
    "MemoryItem",
    "MemoryItemInput",
    "ConsentRecord",
    "ConsentPrompt",
    "ExtractionResult",
    "EvaluationResult",
    "MemoryContext",
    "MemoryStats",
    "ConsentStats",
    "MemoryCluster",
    "SummarizationStats",
    "FactMemoryError",
    "RateLimited",
    "GenerationUnavailable",
    "ParseError",
    "PolicyRejected",
    "Unauthorized",
    "StorageError",
    "PolicyEngine",
    "FactExtractor",
    "RateLimiter",
    "FactStore",
    "GLOBAL_USER_ID",
    "ConsentLedger",
    "MemoryRetriever",
    "MemorySummarizer",
    "MemoryPipeline",
    "create_memory_pipeline",
]
