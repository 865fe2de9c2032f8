"""Models package - SQLAlchemy data models."""

from extraction_queue.models.job import (
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    JobType,
    utcnow,
)

__all__ = [
    "Job",
    "JobType",
    "JobStatus",
    "TERMINAL_STATUSES",
    "utcnow",
]
