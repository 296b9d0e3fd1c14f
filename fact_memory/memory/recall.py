"""
Memory recall for prompt injection.

Scores a user's live memories against a query with a blended
trigram/keyword/edit-distance similarity and renders the best ones
into a context block.
"""

import time
from typing import Dict, List, Optional, Tuple

import structlog

from fact_memory.config.settings import RetrievalCfg
from fact_memory.eval.telemetry import MetricsSink
from fact_memory.persist.hashing import short_hash
from .schemas import MemoryContext, MemoryItem
from .store import FactStore
from .text_utils import semantic_similarity

logger = structlog.get_logger(__name__)

CONTEXT_HEADER = "=== User Memory ==="

# Section order and titles of the rendered context block
SECTION_TITLES: List[Tuple[str, str]] = [
    ("preference", "Preferences"),
    ("profile_fact", "Profile"),
    ("contact", "Contact Info"),
    ("task_hint", "Tasks & Hints"),
    ("fact", "Facts"),
]


class MemoryRetriever:
    """
    Retrieves relevant memories for a query.

    Scoring:
    - Trigram overlap (50%): character-level similarity
    - Keyword overlap (30%): Jaccard over stop-word-filtered tokens
    - Edit similarity (20%): normalized Levenshtein distance
    Ties are broken by most recently updated first.
    """

    def __init__(
        self,
        store: FactStore,
        cfg: Optional[RetrievalCfg] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        """
        Initialize retriever.

        Args:
            store: FactStore to read from
            cfg: Retrieval configuration (limit, weights)
            metrics: Optional event sink
        """
        self.store = store
        self.cfg = cfg or RetrievalCfg()
        self.metrics = metrics

    @property
    def weights(self) -> Tuple[float, float, float]:
        return (self.cfg.trigram_weight, self.cfg.keyword_weight, self.cfg.edit_weight)

    @staticmethod
    def memory_text(item: MemoryItem) -> str:
        """Text a memory is matched on: person, key and value."""
        parts = []
        if item.person and item.person != "self":
            parts.append(item.person)
        parts.append(item.key.replace("_", " "))
        parts.append(item.value)
        return " ".join(parts)

    def score(self, query: str, item: MemoryItem) -> float:
        """Relevance of one memory to the query in [0, 1]."""
        return semantic_similarity(query, self.memory_text(item), self.weights)

    def rank(self, query: str, items: List[MemoryItem]) -> List[Tuple[float, MemoryItem]]:
        """
        Order memories by descending relevance.

        Args:
            query: Query text
            items: Candidate memories

        Returns:
            (score, item) pairs, best first
        """
        scored = [(self.score(query, item), item) for item in items]
        scored.sort(key=lambda pair: (pair[0], pair[1].updated_at), reverse=True)
        return scored

    async def retrieve_for_prompt(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
    ) -> MemoryContext:
        """
        Retrieve the most relevant memories and render a context block.

        Args:
            user_id: User whose memories are searched
            query: Query text
            limit: Maximum memories returned (defaults to cfg.default_limit)

        Returns:
            MemoryContext; empty when the user has no live memories
        """
        start = time.perf_counter()
        limit = self.cfg.default_limit if limit is None else limit

        items = await self.store.list_by_user(user_id)
        relevant = [item for _, item in self.rank(query, items)[:max(limit, 0)]]
        context = self.format_context(relevant)

        latency_ms = (time.perf_counter() - start) * 1000
        if self.metrics is not None:
            self.metrics.log_retrieve(user_id, short_hash(query), len(relevant), latency_ms)
        logger.debug(
            "memories_retrieved",
            user_id=user_id,
            candidates=len(items),
            returned=len(relevant),
            latency_ms=round(latency_ms, 2),
        )
        return MemoryContext(context=context, relevant=relevant)

    @staticmethod
    def format_context(items: List[MemoryItem]) -> str:
        """
        Format memories for injection into a generation prompt.

        Items are grouped by type under fixed section titles; order within
        a section follows the ranking.
        """
        if not items:
            return ""

        grouped: Dict[str, List[MemoryItem]] = {}
        for item in items:
            grouped.setdefault(item.type, []).append(item)

        lines = [CONTEXT_HEADER]
        for type_, title in SECTION_TITLES:
            section = grouped.get(type_)
            if not section:
                continue
            lines.append(f"{title}:")
            lines.extend(item.line() for item in section)

        return "\n".join(lines)
