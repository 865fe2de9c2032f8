"""
Stats Service - Queue counts and retention cleanup.
"""

from datetime import datetime

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from extraction_queue.database import persistence_guard
from extraction_queue.models import TERMINAL_STATUSES, Job, JobStatus
from extraction_queue.schemas import JobStatsResponse
from extraction_queue.services.progress import ProgressStore

logger = structlog.get_logger(__name__)


async def get_stats(db: AsyncSession) -> JobStatsResponse:
    """
    Count jobs per status in a single statement.

    `total` is the sum of the four status counts from the same read.
    """
    async with persistence_guard(db, "get_stats"):
        result = await db.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        rows = result.all()

    counts = {status.value: 0 for status in JobStatus}
    for status, count in rows:
        if status in counts:
            counts[status] = int(count)
        else:
            await logger.awarning("unknown_job_status", status=status, count=count)

    return JobStatsResponse(total=sum(counts.values()), **counts)


async def purge_completed(
    db: AsyncSession,
    older_than: datetime,
    store: ProgressStore | None = None,
) -> int:
    """
    Delete completed and failed jobs that finished before `older_than`.

    Pending and claimed jobs are never touched. Running twice with the same
    cutoff deletes nothing the second time. With a store, the progress
    snapshots of the deleted jobs go too.

    Returns:
        Number of jobs deleted
    """
    finished_at = func.coalesce(Job.completed_at, Job.failed_at)
    async with persistence_guard(db, "purge_completed"):
        result = await db.execute(
            delete(Job)
            .where(Job.status.in_(TERMINAL_STATUSES), finished_at < older_than)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        purged_ids = list(result.scalars().all())
        await db.commit()

    if store is not None:
        for job_id in purged_ids:
            await store.delete_snapshot(job_id)

    count = len(purged_ids)
    if count:
        await logger.ainfo("jobs_purged", count=count, older_than=older_than.isoformat())
    return count
