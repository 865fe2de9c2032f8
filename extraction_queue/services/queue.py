"""
Queue Service - Job store operations and the atomic claim.

Every status change is a single conditional UPDATE on the `jobs` table, so
concurrent workers (in any number of processes) coordinate through the
database alone and stats readers never observe a half-applied transition.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from extraction_queue.config import get_settings
from extraction_queue.core.errors import JobNotFoundError, JobStateError
from extraction_queue.database import persistence_guard
from extraction_queue.models import TERMINAL_STATUSES, Job, JobStatus, utcnow
from extraction_queue.schemas.payloads import parse_payload
from extraction_queue.services.progress import ProgressStore

logger = structlog.get_logger(__name__)


@dataclass
class JobFilter:
    """Criteria for listing jobs."""

    status: str | None = None
    type: str | None = None
    batch_id: str | None = None
    limit: int = 50
    offset: int = 0


async def enqueue_job(
    db: AsyncSession,
    job_type: str,
    payload: dict[str, Any],
    priority: int = 0,
    *,
    max_retries: int | None = None,
    idempotency_key: str | None = None,
    batch_id: str | None = None,
) -> Job:
    """
    Validate a payload and add a pending job to the queue.

    Args:
        db: Database session
        job_type: Payload discriminator
        payload: Type-specific payload
        priority: Higher values are claimed first
        max_retries: Reclaims allowed before the job is force-failed
        idempotency_key: Return the live job already enqueued under this key
        batch_id: Shared identifier for jobs created together

    Returns:
        The new job, or the existing pending/claimed job with the same key

    Raises:
        PayloadValidationError: If the payload does not match the job type
    """
    validated = parse_payload(job_type, payload)

    async with persistence_guard(db, "enqueue"):
        if idempotency_key:
            result = await db.execute(
                select(Job)
                .where(
                    Job.type == job_type,
                    Job.idempotency_key == idempotency_key,
                    Job.status.in_(
                        [JobStatus.PENDING.value, JobStatus.CLAIMED.value]
                    ),
                )
                .order_by(Job.created_at.desc(), Job.seq.desc())
                .limit(1)
            )
            existing = result.scalar_one_or_none()
            if existing:
                await logger.ainfo(
                    "job_enqueue_deduplicated",
                    job_id=existing.id,
                    idempotency_key=idempotency_key,
                )
                return existing

        job = Job(
            type=job_type,
            payload=validated.model_dump(mode="json"),
            priority=priority,
            status=JobStatus.PENDING.value,
            retry_count=0,
            max_retries=(
                max_retries
                if max_retries is not None
                else get_settings().job_max_retries_default
            ),
            idempotency_key=idempotency_key,
            batch_id=batch_id,
            created_at=utcnow(),
        )
        db.add(job)
        await db.commit()

    await logger.ainfo(
        "job_enqueued",
        job_id=job.id,
        type=job_type,
        priority=priority,
    )
    return job


async def claim_job(
    db: AsyncSession,
    worker_id: str,
    now: datetime | None = None,
) -> Job | None:
    """
    Atomically claim the highest-priority, oldest pending job.

    The candidate is selected and flipped to `claimed` in one UPDATE. On
    PostgreSQL the subquery locks with SKIP LOCKED so concurrent claimers move
    on to the next row; SQLite serializes writers on the database lock. The
    outer `status = pending` guard makes the update a compare-and-swap.

    Returns:
        The claimed job, or None if nothing is pending
    """
    now = now or utcnow()
    # Aliased so the subquery is not correlated against the UPDATE target
    pending = aliased(Job)
    candidate = (
        select(pending.id)
        .where(pending.status == JobStatus.PENDING.value)
        .order_by(
            pending.priority.desc(),
            pending.created_at.asc(),
            pending.seq.asc(),
        )
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(Job)
        .where(Job.id == candidate, Job.status == JobStatus.PENDING.value)
        .values(
            status=JobStatus.CLAIMED.value,
            claimed_at=now,
            locked_by=worker_id,
        )
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )

    async with persistence_guard(db, "claim"):
        result = await db.execute(stmt)
        job = result.scalar_one_or_none()
        await db.commit()

    if job:
        await logger.ainfo(
            "job_claimed",
            job_id=job.id,
            type=job.type,
            worker_id=worker_id,
        )
    return job


async def _resolve(
    db: AsyncSession,
    job_id: str,
    worker_id: str | None,
    operation: str,
    values: dict[str, Any],
) -> Job | None:
    conditions = [Job.id == job_id, Job.status == JobStatus.CLAIMED.value]
    if worker_id is not None:
        conditions.append(Job.locked_by == worker_id)

    stmt = (
        update(Job)
        .where(*conditions)
        .values(claimed_at=None, locked_by=None, **values)
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    async with persistence_guard(db, operation):
        result = await db.execute(stmt)
        job = result.scalar_one_or_none()
        await db.commit()

    if job is None:
        # Reclaimed, deleted or resolved by someone else since our claim
        await logger.awarning(
            "job_resolution_skipped",
            job_id=job_id,
            operation=operation,
            worker_id=worker_id,
        )
    return job


async def complete_job(
    db: AsyncSession,
    job_id: str,
    result: dict[str, Any] | None = None,
    *,
    worker_id: str | None = None,
) -> Job | None:
    """
    Mark a claimed job as completed.

    Returns:
        The completed job, or None if the job is no longer claimed (by
        `worker_id`, when given)
    """
    job = await _resolve(
        db,
        job_id,
        worker_id,
        "complete",
        {
            "status": JobStatus.COMPLETED.value,
            "completed_at": utcnow(),
            "result": result,
            "last_error": None,
        },
    )
    if job:
        await logger.ainfo("job_completed", job_id=job.id, type=job.type)
    return job


async def fail_job(
    db: AsyncSession,
    job_id: str,
    error: str,
    *,
    worker_id: str | None = None,
) -> Job | None:
    """
    Mark a claimed job as failed.

    Returns:
        The failed job, or None if the job is no longer claimed (by
        `worker_id`, when given)
    """
    job = await _resolve(
        db,
        job_id,
        worker_id,
        "fail",
        {
            "status": JobStatus.FAILED.value,
            "failed_at": utcnow(),
            "last_error": error,
        },
    )
    if job:
        await logger.aerror("job_failed", job_id=job.id, type=job.type, error=error)
    return job


async def retry_job(db: AsyncSession, job_id: str) -> Job:
    """
    Return a completed or failed job to the pending pool.

    The retry counter is incremented; the previous error and result are
    cleared. A pending job is returned unchanged.

    Raises:
        JobNotFoundError: If job doesn't exist
        JobStateError: If the job is currently claimed by a worker
    """
    job = await get_job(db, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    if job.status == JobStatus.PENDING.value:
        return job
    if job.status == JobStatus.CLAIMED.value:
        raise JobStateError(job_id, job.status, "retry")

    stmt = (
        update(Job)
        .where(Job.id == job_id, Job.status.in_(TERMINAL_STATUSES))
        .values(
            status=JobStatus.PENDING.value,
            retry_count=Job.retry_count + 1,
            last_error=None,
            result=None,
            completed_at=None,
            failed_at=None,
            claimed_at=None,
            locked_by=None,
        )
        .returning(Job)
        .execution_options(synchronize_session=False, populate_existing=True)
    )
    async with persistence_guard(db, "retry"):
        result = await db.execute(stmt)
        updated = result.scalar_one_or_none()
        await db.commit()

    if updated is None:
        current = await get_job(db, job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        raise JobStateError(job_id, current.status, "retry")

    await logger.ainfo(
        "job_retried",
        job_id=job_id,
        retry_count=updated.retry_count,
    )
    return updated


async def get_job(db: AsyncSession, job_id: str) -> Job | None:
    """Get job by ID, returns None if not found."""
    async with persistence_guard(db, "get_job"):
        result = await db.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


async def list_jobs(
    db: AsyncSession,
    job_filter: JobFilter | None = None,
) -> list[Job]:
    """List jobs in claim order (priority desc, then oldest first, then insertion order)."""
    job_filter = job_filter or JobFilter()
    query = select(Job)
    if job_filter.status:
        query = query.where(Job.status == job_filter.status)
    if job_filter.type:
        query = query.where(Job.type == job_filter.type)
    if job_filter.batch_id:
        query = query.where(Job.batch_id == job_filter.batch_id)

    query = (
        query.order_by(Job.priority.desc(), Job.created_at.asc(), Job.seq.asc())
        .limit(job_filter.limit)
        .offset(job_filter.offset)
        .execution_options(populate_existing=True)
    )
    async with persistence_guard(db, "list_jobs"):
        result = await db.execute(query)
        return list(result.scalars().all())


async def delete_job(
    db: AsyncSession,
    job_id: str,
    store: ProgressStore | None = None,
) -> bool:
    """
    Delete a job regardless of status, along with its progress snapshot
    when a store is given.

    Returns:
        True if deleted, False if not found
    """
    async with persistence_guard(db, "delete_job"):
        result = await db.execute(
            delete(Job)
            .where(Job.id == job_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    deleted = result.rowcount > 0
    if deleted:
        if store is not None:
            await store.delete_snapshot(job_id)
        await logger.ainfo("job_deleted", job_id=job_id)
    return deleted
