"""
Memory consolidation.

Clusters old memories whose keys belong to the same concept and keeps
one record per cluster.
"""

import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import structlog

from fact_memory.config.settings import SummarizerCfg
from fact_memory.eval.telemetry import MetricsSink
from .schemas import Clock, MemoryCluster, MemoryItem, SummarizationStats, utcnow
from .store import FactStore
from .text_utils import key_base

logger = structlog.get_logger(__name__)


class MemorySummarizer:
    """
    Consolidates related memories of a user.

    Clustering: same type, same person, same key concept (semantic key
    group or first key token), created at least min_age_days ago.

    Consolidation: the highest-confidence record survives with a small
    confidence boost per absorbed record; the others are removed. A second
    run over an unchanged store finds no clusters.
    """

    def __init__(
        self,
        store: FactStore,
        cfg: Optional[SummarizerCfg] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsSink] = None,
    ):
        """
        Initialize summarizer.

        Args:
            store: FactStore holding the memories
            cfg: Summarizer configuration
            clock: Time source (injectable for tests)
            metrics: Optional event sink
        """
        self.store = store
        self.cfg = cfg or SummarizerCfg()
        self.clock = clock
        self.metrics = metrics
        self._running: Dict[str, asyncio.Lock] = {}

    def _lock(self, user_id: str) -> asyncio.Lock:
        lock = self._running.get(user_id)
        if lock is None:
            lock = self._running[user_id] = asyncio.Lock()
        return lock

    def find_clusters(self, items: List[MemoryItem], min_age_days: int) -> List[MemoryCluster]:
        """
        Group related memories old enough to consolidate.

        Args:
            items: Live memories of one user
            min_age_days: Minimum age measured from created_at

        Returns:
            Clusters with at least cfg.min_cluster_size members
        """
        cutoff = self.clock() - timedelta(days=min_age_days)
        groups: Dict[Tuple[str, str, str], List[MemoryItem]] = {}

        for item in items:
            if item.created_at > cutoff:
                continue
            group_key = (item.type, item.person or "self", key_base(item.key))
            groups.setdefault(group_key, []).append(item)

        clusters = []
        for (type_, person, group), members in sorted(groups.items()):
            if len(members) < self.cfg.min_cluster_size:
                continue
            members.sort(key=lambda m: (m.confidence, m.updated_at, m.id), reverse=True)
            clusters.append(MemoryCluster(
                type=type_,
                person=person,
                group=group,
                keep_id=members[0].id,
                item_ids=[m.id for m in members],
                keys=[m.key for m in members],
            ))
        return clusters

    async def preview_summarization(
        self,
        user_id: str,
        min_age_days: Optional[int] = None,
    ) -> List[MemoryCluster]:
        """
        Dry run: report the clusters a summarization would consolidate.

        Does not mutate the store.
        """
        age = self.cfg.min_age_days if min_age_days is None else min_age_days
        items = await self.store.list_by_user(user_id)
        return self.find_clusters(items, age)

    async def summarize_user_memories(
        self,
        user_id: str,
        min_age_days: Optional[int] = None,
    ) -> SummarizationStats:
        """
        Consolidate related memories of a user.

        Runs are serialized per user.

        Args:
            user_id: User identifier
            min_age_days: Minimum memory age (defaults to cfg.min_age_days)

        Returns:
            SummarizationStats with the processed clusters
        """
        age = self.cfg.min_age_days if min_age_days is None else min_age_days

        async with self._lock(user_id):
            items = await self.store.list_by_user(user_id)
            by_id = {item.id: item for item in items}
            clusters = self.find_clusters(items, age)
            stats = SummarizationStats(user_id=user_id, clusters_found=len(clusters))

            for cluster in clusters:
                keep = by_id[cluster.keep_id]
                absorbed = len(cluster.item_ids) - 1
                boosted = min(1.0, keep.confidence + self.cfg.confidence_boost * absorbed)

                archived = 0
                for item_id in cluster.item_ids:
                    if item_id == cluster.keep_id:
                        continue
                    if await self.store.remove(user_id, item_id):
                        archived += 1

                await self.store.update(user_id, keep.id, confidence=boosted)

                stats.memories_archived += archived
                stats.summaries_created += 1
                stats.clusters.append(cluster)
                if self.metrics is not None:
                    self.metrics.log_summarize(user_id, len(cluster.item_ids), archived)

        logger.info(
            "summarization_completed",
            user_id=user_id,
            clusters=stats.clusters_found,
            archived=stats.memories_archived,
        )
        return stats
