"""
Background maintenance for the memory engine.

Provides job execution with progress tracking and the periodic
expiry, consent cleanup and summarization workers.
"""

from .jobs import JobStatus, JobManager
from .maintenance import run_expire_sweep, run_consent_cleanup, run_summarization

__all__ = [
    "JobStatus",
    "JobManager",
    "run_expire_sweep",
    "run_consent_cleanup",
    "run_summarization",
]
