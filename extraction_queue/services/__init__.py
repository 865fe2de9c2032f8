"""Services package - Queue, maintenance and progress storage."""

from extraction_queue.services.progress import ProgressStore
from extraction_queue.services.queue import (
    JobFilter,
    claim_job,
    complete_job,
    delete_job,
    enqueue_job,
    fail_job,
    get_job,
    list_jobs,
    retry_job,
)
from extraction_queue.services.reclaimer import RETRY_LIMIT_ERROR, reclaim_stale_locks
from extraction_queue.services.stats import get_stats, purge_completed

__all__ = [
    # Queue
    "JobFilter",
    "enqueue_job",
    "claim_job",
    "complete_job",
    "fail_job",
    "retry_job",
    "get_job",
    "list_jobs",
    "delete_job",
    # Maintenance
    "reclaim_stale_locks",
    "RETRY_LIMIT_ERROR",
    "get_stats",
    "purge_completed",
    # Progress
    "ProgressStore",
]
