"""
Job Schemas - Pydantic models for the queue admin API.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from extraction_queue.models import Job


class EnqueueRequest(BaseModel):
    """Request to add a job to the queue."""

    type: str = Field(..., description="Job type (extraction, echo, create_file, delete_file)")
    payload: dict[str, Any] = Field(..., description="Type-specific payload")
    priority: int = Field(default=0, description="Higher values are claimed first")
    max_retries: int | None = Field(default=None, ge=0)
    idempotency_key: str | None = Field(default=None, max_length=255)
    batch_id: str | None = Field(default=None, max_length=64)


class JobResponse(BaseModel):
    """Job status response."""

    job_id: str = Field(..., description="Unique job identifier")
    type: str
    status: str = Field(..., description="Job status (pending, claimed, completed, failed)")
    priority: int
    payload: dict[str, Any]
    retry_count: int
    max_retries: int
    last_error: str | None = None
    locked_by: str | None = None
    batch_id: str | None = None
    result: dict[str, Any] | None = None
    created_at: datetime
    claimed_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            job_id=job.id,
            type=job.type,
            status=job.status,
            priority=job.priority,
            payload=job.payload,
            retry_count=job.retry_count,
            max_retries=job.max_retries,
            last_error=job.last_error,
            locked_by=job.locked_by,
            batch_id=job.batch_id,
            result=job.result,
            created_at=job.created_at,
            claimed_at=job.claimed_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
        )


class JobListResponse(BaseModel):
    """Page of jobs matching a filter."""

    jobs: list[JobResponse]
    total: int


class JobStatsResponse(BaseModel):
    """Counts per status; total always equals the sum of the four."""

    total: int
    pending: int
    claimed: int
    completed: int
    failed: int


class PurgeRequest(BaseModel):
    older_than_minutes: int | None = Field(
        default=None,
        ge=0,
        description="Defaults to the configured retention window",
    )


class MaintenanceResponse(BaseModel):
    count: int
