"""
Reclaimer Service - Recovers jobs abandoned by crashed workers.
"""

from datetime import datetime, timedelta

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from extraction_queue.database import persistence_guard
from extraction_queue.models import Job, JobStatus, utcnow

logger = structlog.get_logger(__name__)

RETRY_LIMIT_ERROR = "exceeded retry limit"


async def reclaim_stale_locks(
    db: AsyncSession,
    timeout: timedelta,
    now: datetime | None = None,
) -> int:
    """
    Return jobs claimed longer than `timeout` ago to the pending pool.

    Jobs that have already used up their retries are failed with
    "exceeded retry limit" instead. Both updates are conditional on
    `status = claimed`, so this pass is safe to run while workers claim.

    Args:
        db: Database session
        timeout: Age after which a claim is considered abandoned
        now: Reference time (defaults to the current time)

    Returns:
        Number of jobs reclaimed or force-failed
    """
    now = now or utcnow()
    cutoff = now - timeout
    stale = (
        Job.status == JobStatus.CLAIMED.value,
        Job.claimed_at.is_not(None),
        Job.claimed_at < cutoff,
    )

    async with persistence_guard(db, "reclaim_stale_locks"):
        exhausted = await db.execute(
            update(Job)
            .where(*stale, Job.retry_count >= Job.max_retries)
            .values(
                status=JobStatus.FAILED.value,
                failed_at=now,
                claimed_at=None,
                locked_by=None,
                last_error=RETRY_LIMIT_ERROR,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        failed_ids = list(exhausted.scalars().all())

        reclaimed = await db.execute(
            update(Job)
            .where(*stale)
            .values(
                status=JobStatus.PENDING.value,
                claimed_at=None,
                locked_by=None,
                retry_count=Job.retry_count + 1,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        reclaimed_ids = list(reclaimed.scalars().all())
        await db.commit()

    if failed_ids:
        await logger.awarning(
            "stale_jobs_failed",
            count=len(failed_ids),
            job_ids=failed_ids,
        )
    if reclaimed_ids:
        await logger.ainfo(
            "stale_jobs_reclaimed",
            count=len(reclaimed_ids),
            job_ids=reclaimed_ids,
        )
    return len(failed_ids) + len(reclaimed_ids)
