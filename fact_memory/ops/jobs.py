"""
Background job runner for memory maintenance.

Runs async workers as asyncio tasks and appends every state change to
a JSONL log, so the last line per job id is its current state.
"""

import asyncio
import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Literal, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

JobState = Literal["queued", "running", "succeeded", "failed"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobStatus:
    """Status of a maintenance job."""

    id: str
    type: str
    state: JobState
    progress: float                 # 0.0 to 1.0
    message: str
    submitted_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: dict = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "JobStatus":
        return cls(**data)

    @property
    def done(self) -> bool:
        return self.state in ("succeeded", "failed")


Worker = Callable[[JobStatus, "JobManager"], Awaitable[Optional[dict]]]


class JobManager:
    """
    In-process async job runner with persistent state.

    Workers receive (job, manager), may report progress through the
    manager, and return an optional result dict stored on the job.
    """

    def __init__(self, state_file: Union[str, Path], clock: Callable[[], datetime] = _now):
        """
        Initialize job manager.

        Args:
            state_file: JSONL file for job state; existing entries are reloaded
            clock: Time source for job timestamps
        """
        self.state_file = Path(state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.clock = clock

        self.jobs: Dict[str, JobStatus] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self._load_state()

    def _load_state(self) -> None:
        """Replay the state log; the last entry per job wins."""
        if not self.state_file.exists():
            return

        with open(self.state_file, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    job = JobStatus.from_dict(json.loads(line))
                except (ValueError, TypeError) as e:
                    logger.warning("job_state_line_skipped", error=str(e))
                    continue
                self.jobs[job.id] = job

        # Jobs interrupted by a restart can never finish
        for job in self.jobs.values():
            if not job.done:
                job.state = "failed"
                job.error = "interrupted"
                job.message = "Interrupted by restart"

    def _append_state(self, job: JobStatus) -> None:
        with open(self.state_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(job.to_dict()) + "\n")

    def submit(self, job_type: str, worker: Worker) -> str:
        """
        Schedule a worker on the running event loop.

        Args:
            job_type: Type identifier (e.g. "expire_sweep")
            worker: Async callable taking (job, manager)

        Returns:
            Job ID
        """
        job = JobStatus(
            id=str(uuid.uuid4()),
            type=job_type,
            state="queued",
            progress=0.0,
            message=f"Queued {job_type}",
            submitted_at=self.clock().isoformat(),
        )
        self.jobs[job.id] = job
        self._append_state(job)

        self._tasks[job.id] = asyncio.create_task(self._run_job(job, worker))
        logger.info("job_submitted", job_id=job.id, job_type=job_type)
        return job.id

    async def _run_job(self, job: JobStatus, worker: Worker) -> None:
        job.state = "running"
        job.started_at = self.clock().isoformat()
        job.message = "Starting..."
        self._append_state(job)

        try:
            result = await worker(job, self)
        except Exception as e:
            job.state = "failed"
            job.error = f"{type(e).__name__}: {e}"
            job.message = f"Failed: {e}"
            logger.error("job_failed", job_id=job.id, job_type=job.type, error=job.error)
        else:
            job.state = "succeeded"
            job.progress = 1.0
            job.result = result or {}
            job.message = "Completed successfully"
            logger.info("job_succeeded", job_id=job.id, job_type=job.type, result=job.result)

        job.finished_at = self.clock().isoformat()
        self._append_state(job)

    def update_progress(self, job_id: str, progress: float, message: str) -> None:
        """
        Update job progress (called from workers).

        Args:
            job_id: Job ID
            progress: Progress value (0.0 to 1.0)
            message: Status message
        """
        job = self.jobs.get(job_id)
        if job is None:
            return
        job.progress = max(0.0, min(1.0, progress))
        job.message = message
        self._append_state(job)

    async def wait(self, job_id: str) -> Optional[JobStatus]:
        """Wait for a job submitted by this manager to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task
        return self.jobs.get(job_id)

    def get(self, job_id: str) -> Optional[JobStatus]:
        return self.jobs.get(job_id)

    def list_jobs(self, state: Optional[str] = None, job_type: Optional[str] = None) -> List[JobStatus]:
        """
        List jobs, most recently submitted first.

        Args:
            state: Filter by state (queued, running, succeeded, failed)
            job_type: Filter by job type
        """
        jobs = list(self.jobs.values())
        if state:
            jobs = [j for j in jobs if j.state == state]
        if job_type:
            jobs = [j for j in jobs if j.type == job_type]
        jobs.sort(key=lambda j: j.submitted_at, reverse=True)
        return jobs

    def cleanup_old_jobs(self, max_age_hours: int = 24) -> int:
        """
        Forget finished jobs older than max_age_hours.

        Returns:
            Number of jobs removed from the registry
        """
        cutoff = self.clock() - timedelta(hours=max_age_hours)
        removed = 0

        for job_id, job in list(self.jobs.items()):
            if job.done and job.finished_at:
                if datetime.fromisoformat(job.finished_at) < cutoff:
                    del self.jobs[job_id]
                    self._tasks.pop(job_id, None)
                    removed += 1

        return removed

    async def shutdown(self) -> None:
        """Cancel unfinished jobs and wait for them to stop."""
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
