"""Core utilities package."""

from extraction_queue.core.errors import (
    AgentFailure,
    AppException,
    ErrorCode,
    ErrorResponse,
    JobNotFoundError,
    JobStateError,
    PayloadValidationError,
    PersistenceError,
    ProgressNotFoundError,
    RunLogNotFoundError,
    StepFailure,
)

__all__ = [
    "AppException",
    "ErrorCode",
    "ErrorResponse",
    "PayloadValidationError",
    "JobNotFoundError",
    "JobStateError",
    "ProgressNotFoundError",
    "RunLogNotFoundError",
    "StepFailure",
    "AgentFailure",
    "PersistenceError",
]
