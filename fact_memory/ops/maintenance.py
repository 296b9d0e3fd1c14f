"""
Maintenance workers for the JobManager.

Each factory binds a pipeline and returns an async worker taking
(job, manager) that reports progress and returns a result dict.
"""

from typing import TYPE_CHECKING, Iterable, Optional

import structlog

from fact_memory.memory.pipeline import MemoryPipeline

if TYPE_CHECKING:
    from .jobs import JobManager, JobStatus

logger = structlog.get_logger(__name__)


def run_expire_sweep(pipeline: MemoryPipeline):
    """Worker that purges expired memories across all users."""

    async def worker(job: "JobStatus", manager: "JobManager") -> dict:
        manager.update_progress(job.id, 0.1, "Sweeping expired memories...")
        removed = await pipeline.store.expire_sweep()
        return {"removed": removed}

    return worker


def run_consent_cleanup(pipeline: MemoryPipeline):
    """Worker that drops lapsed decline records."""

    async def worker(job: "JobStatus", manager: "JobManager") -> dict:
        manager.update_progress(job.id, 0.1, "Removing lapsed consent records...")
        removed = await pipeline.consent.cleanup_expired()
        return {"removed": removed}

    return worker


def run_summarization(
    pipeline: MemoryPipeline,
    user_ids: Optional[Iterable[str]] = None,
    min_age_days: Optional[int] = None,
):
    """
    Worker that consolidates memories user by user.

    Args:
        pipeline: Memory pipeline
        user_ids: Users to process; None means every user with memories
        min_age_days: Override of the configured minimum age
    """

    async def worker(job: "JobStatus", manager: "JobManager") -> dict:
        users = list(user_ids) if user_ids is not None else await pipeline.store.list_users()
        totals = {"users": len(users), "clusters": 0, "archived": 0}

        for i, user_id in enumerate(users, start=1):
            stats = await pipeline.summarizer.summarize_user_memories(user_id, min_age_days)
            totals["clusters"] += stats.clusters_found
            totals["archived"] += stats.memories_archived
            manager.update_progress(job.id, i / len(users), f"Summarized {i}/{len(users)} users")

        logger.info("summarization_job_completed", **totals)
        return totals

    return worker
