"""
Jobs API - Queue administration endpoints.
"""

from datetime import timedelta
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Path, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from extraction_queue.config import get_settings
from extraction_queue.core.errors import (
    JobNotFoundError,
    ProgressNotFoundError,
    RunLogNotFoundError,
)
from extraction_queue.database import get_db
from extraction_queue.models import utcnow
from extraction_queue.schemas import (
    EnqueueRequest,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    MaintenanceResponse,
    PurgeRequest,
)
from extraction_queue.services import (
    JobFilter,
    ProgressStore,
    delete_job,
    enqueue_job,
    get_job,
    get_stats,
    list_jobs,
    purge_completed,
    reclaim_stale_locks,
    retry_job,
)
from extraction_queue.services.progress import dump_entries

router = APIRouter(tags=["Jobs"])


def get_progress_store() -> ProgressStore:
    """FastAPI dependency for the progress store."""
    return ProgressStore.from_settings()


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_job(
    request: EnqueueRequest,
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """
    Enqueue a job.

    The payload is validated against the job type before anything is
    stored. With an idempotency key, the live job already enqueued under
    that key is returned instead of a new one.
    """
    job = await enqueue_job(
        db,
        request.type,
        request.payload,
        request.priority,
        max_retries=request.max_retries,
        idempotency_key=request.idempotency_key,
        batch_id=request.batch_id,
    )
    return JobResponse.from_job(job)


@router.get("/jobs", response_model=JobListResponse)
async def list_queue_jobs(
    db: AsyncSession = Depends(get_db),
    job_status: Annotated[str | None, Query(alias="status")] = None,
    job_type: Annotated[str | None, Query(alias="type")] = None,
    batch_id: Annotated[str | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JobListResponse:
    """List jobs in claim order (priority first, then oldest)."""
    jobs = await list_jobs(
        db,
        JobFilter(
            status=job_status,
            type=job_type,
            batch_id=batch_id,
            limit=limit,
            offset=offset,
        ),
    )
    return JobListResponse(
        jobs=[JobResponse.from_job(job) for job in jobs],
        total=len(jobs),
    )


@router.get("/jobs/stats", response_model=JobStatsResponse)
async def queue_stats(db: AsyncSession = Depends(get_db)) -> JobStatsResponse:
    """Counts per status."""
    return await get_stats(db)


@router.post("/jobs/maintenance/reclaim", response_model=MaintenanceResponse)
async def reclaim_jobs(db: AsyncSession = Depends(get_db)) -> MaintenanceResponse:
    """Return jobs whose lock has expired to the queue."""
    timeout = timedelta(minutes=get_settings().lock_timeout_minutes)
    return MaintenanceResponse(count=await reclaim_stale_locks(db, timeout))


@router.post("/jobs/maintenance/purge", response_model=MaintenanceResponse)
async def purge_jobs(
    request: PurgeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    store: ProgressStore = Depends(get_progress_store),
) -> MaintenanceResponse:
    """Delete completed and failed jobs older than the retention window."""
    minutes = request.older_than_minutes if request else None
    if minutes is None:
        minutes = get_settings().purge_after_minutes
    count = await purge_completed(db, utcnow() - timedelta(minutes=minutes), store)
    return MaintenanceResponse(count=count)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job_status(
    job_id: Annotated[str, Path(description="Job ID")],
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await get_job(db, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return JobResponse.from_job(job)


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_job(
    job_id: Annotated[str, Path(description="Job ID")],
    db: AsyncSession = Depends(get_db),
    store: ProgressStore = Depends(get_progress_store),
) -> Response:
    """Delete a job and its progress snapshot, regardless of its status."""
    if not await delete_job(db, job_id, store):
        raise JobNotFoundError(job_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/jobs/{job_id}/retry", response_model=JobResponse)
async def retry_queue_job(
    job_id: Annotated[str, Path(description="Job ID")],
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Send a completed or failed job back to pending."""
    job = await retry_job(db, job_id)
    return JobResponse.from_job(job)


@router.get("/jobs/{job_id}/progress")
async def get_job_progress(
    job_id: Annotated[str, Path(description="Job ID")],
    store: ProgressStore = Depends(get_progress_store),
) -> dict[str, Any]:
    """
    Latest progress snapshot of a job's run.

    Keys are camelCase, matching the snapshot files on disk.
    """
    try:
        snapshot = await store.read_snapshot(job_id)
    except ValueError:
        snapshot = None
    if snapshot is None:
        raise ProgressNotFoundError(job_id)
    return snapshot.model_dump(mode="json", by_alias=True)


@router.get("/runs/{run_id}/log")
async def get_run_log(
    run_id: Annotated[str, Path(description="Agent run ID")],
    store: ProgressStore = Depends(get_progress_store),
) -> list[dict[str, Any]]:
    """Full structured log of one agent run."""
    try:
        entries = await store.read_run_log(run_id)
    except ValueError:
        entries = None
    if entries is None:
        raise RunLogNotFoundError(run_id)
    return dump_entries(entries)
