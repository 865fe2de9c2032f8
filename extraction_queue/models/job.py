"""
Job Model - Durable queue records.

A job moves pending -> claimed -> completed|failed. `claimed_at` and
`locked_by` are set only while the job is claimed.
"""

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from extraction_queue.database import Base


def utcnow() -> datetime:
    """Current UTC time with microsecond precision."""
    return datetime.now(timezone.utc)


class JobType(str, enum.Enum):
    """Payload discriminators understood by the worker."""

    EXTRACTION = "extraction"
    ECHO = "echo"
    CREATE_FILE = "create_file"
    DELETE_FILE = "delete_file"


class JobStatus(str, enum.Enum):
    """Queue status of a job."""

    PENDING = "pending"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class Job(Base):
    """Job entity stored in the shared queue table."""

    __tablename__ = "jobs"
    __table_args__ = (
        # Serves the claim query: pending rows by priority, age, then insertion order
        Index("ix_jobs_claim_order", "status", "priority", "created_at", "seq"),
    )

    # Insertion order; breaks ties between jobs created in the same instant
    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        default=lambda: str(uuid4()),
    )
    type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=JobStatus.PENDING.value,
        index=True,
    )

    # Claim ownership
    locked_by: Mapped[str | None] = mapped_column(String(128))
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Retry tracking
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text)

    # Grouping and de-duplication
    idempotency_key: Mapped[str | None] = mapped_column(String(255), index=True)
    batch_id: Mapped[str | None] = mapped_column(String(64), index=True)

    result: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def __repr__(self) -> str:
        return f"<Job {self.id[:8]} {self.type}:{self.status}>"
