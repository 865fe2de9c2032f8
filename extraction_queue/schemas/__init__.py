"""Schemas package - Pydantic API and record models."""

from extraction_queue.schemas.job import (
    EnqueueRequest,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    MaintenanceResponse,
    PurgeRequest,
)
from extraction_queue.schemas.payloads import (
    PAYLOAD_MODELS,
    CreateFilePayload,
    DeleteFilePayload,
    EchoPayload,
    ExtractionPayload,
    PayloadBase,
    parse_payload,
    slugify,
)
from extraction_queue.schemas.progress import (
    ExtractionResult,
    ProgressSnapshot,
    RunLogEntry,
    StepProgress,
)

__all__ = [
    # Job API
    "EnqueueRequest",
    "JobResponse",
    "JobListResponse",
    "JobStatsResponse",
    "PurgeRequest",
    "MaintenanceResponse",
    # Payloads
    "PAYLOAD_MODELS",
    "PayloadBase",
    "ExtractionPayload",
    "EchoPayload",
    "CreateFilePayload",
    "DeleteFilePayload",
    "parse_payload",
    "slugify",
    # Progress
    "StepProgress",
    "ProgressSnapshot",
    "RunLogEntry",
    "ExtractionResult",
]
