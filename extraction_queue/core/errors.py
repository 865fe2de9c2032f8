"""
Extraction Queue - Standardized Error Handling

This module provides canonical error codes, exception classes, and FastAPI
exception handlers for consistent error responses across the API.

Step-level failures (StepFailure, AgentFailure) are recovered inside the
pipeline executor. PersistenceError is never recovered locally: it aborts the
current claim/step cycle and surfaces to the worker loop or the HTTP caller.
"""

from enum import Enum
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorCode(str, Enum):
    """Canonical error codes."""

    # Job errors
    JOB_NOT_FOUND = "JOB_NOT_FOUND"
    JOB_STATE_CONFLICT = "JOB_STATE_CONFLICT"
    RUN_LOG_NOT_FOUND = "RUN_LOG_NOT_FOUND"
    PROGRESS_NOT_FOUND = "PROGRESS_NOT_FOUND"

    # Pipeline errors
    STEP_FAILED = "STEP_FAILED"
    AGENT_FAILED = "AGENT_FAILED"

    # General errors
    VALIDATION_ERROR = "VALIDATION_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorResponse(BaseModel):
    """Standardized error response format."""

    error_code: ErrorCode
    message: str
    details: dict[str, Any] = {}
    retry_after: int | None = None


class AppException(Exception):
    """Base application exception with structured error info."""

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        details: dict[str, Any] | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.error_code = error_code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.retry_after = retry_after
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response model."""
        return ErrorResponse(
            error_code=self.error_code,
            message=self.message,
            details=self.details,
            retry_after=self.retry_after,
        )


class PayloadValidationError(AppException):
    """Raised when an enqueued payload does not match its job type."""

    def __init__(
        self,
        job_type: str,
        reason: str,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(
            error_code=ErrorCode.VALIDATION_ERROR,
            message=f"Invalid payload for job type '{job_type}': {reason}",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"type": job_type, "errors": errors or []},
        )


class JobNotFoundError(AppException):
    """Raised when job is not found."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            error_code=ErrorCode.JOB_NOT_FOUND,
            message=f"Job not found: {job_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"job_id": job_id},
        )


class JobStateError(AppException):
    """Raised when an admin operation does not apply to the job's status."""

    def __init__(self, job_id: str, current_status: str, operation: str) -> None:
        super().__init__(
            error_code=ErrorCode.JOB_STATE_CONFLICT,
            message=f"Cannot {operation} job in status '{current_status}'",
            status_code=status.HTTP_409_CONFLICT,
            details={
                "job_id": job_id,
                "status": current_status,
                "operation": operation,
            },
        )


class ProgressNotFoundError(AppException):
    """Raised when a job has no progress snapshot yet."""

    def __init__(self, job_id: str) -> None:
        super().__init__(
            error_code=ErrorCode.PROGRESS_NOT_FOUND,
            message=f"No progress recorded for job: {job_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"job_id": job_id},
        )


class RunLogNotFoundError(AppException):
    """Raised when an agent run log does not exist."""

    def __init__(self, run_id: str) -> None:
        super().__init__(
            error_code=ErrorCode.RUN_LOG_NOT_FOUND,
            message=f"Run log not found: {run_id}",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"run_id": run_id},
        )


class StepFailure(AppException):
    """Raised when a pipeline step's action fails."""

    def __init__(
        self,
        step_id: str,
        reason: str,
        error_code: ErrorCode = ErrorCode.STEP_FAILED,
    ) -> None:
        self.step_id = step_id
        self.reason = reason
        super().__init__(
            error_code=error_code,
            message=f"Step '{step_id}' failed: {reason}",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"step_id": step_id, "reason": reason},
        )


class AgentFailure(StepFailure):
    """Raised when the external AI agent invocation fails."""

    def __init__(self, step_id: str, reason: str) -> None:
        super().__init__(step_id, reason, error_code=ErrorCode.AGENT_FAILED)


class PersistenceError(AppException):
    """Raised when the job store or progress sink cannot read or write."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            error_code=ErrorCode.PERSISTENCE_ERROR,
            message=f"Persistence failure during {operation}: {reason}",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"operation": operation},
            retry_after=5,
        )


# FastAPI exception handlers
async def app_exception_handler(
    request: Request, exc: AppException
) -> JSONResponse:
    """Handle application exceptions."""
    response = exc.to_response()
    headers = {}
    if response.retry_after:
        headers["Retry-After"] = str(response.retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content=response.model_dump(mode="json", exclude_none=True),
        headers=headers,
    )


async def http_exception_handler(
    request: Request, exc: HTTPException
) -> JSONResponse:
    """Handle standard HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error_code=ErrorCode.INTERNAL_ERROR,
            message=str(exc.detail),
        ).model_dump(mode="json", exclude_none=True),
    )


async def general_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle unhandled exceptions."""
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error_code=ErrorCode.INTERNAL_ERROR,
            message="An unexpected error occurred",
        ).model_dump(mode="json", exclude_none=True),
    )
