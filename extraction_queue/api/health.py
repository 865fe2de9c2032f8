"""
Health Check API - Health and readiness endpoints.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from extraction_queue import __version__
from extraction_queue.config import get_settings
from extraction_queue.database import get_db
from extraction_queue.models import utcnow

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    timestamp: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    status: str
    timestamp: str
    checks: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        timestamp=utcnow().isoformat(),
        version=__version__,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    db: AsyncSession = Depends(get_db),
) -> ReadinessResponse:
    """
    Readiness check endpoint.

    Verifies the job store answers and the progress directories exist.
    """
    settings = get_settings()
    checks = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError:
        checks["database"] = False

    checks["apps_path"] = settings.apps_path.exists()
    checks["progress_path"] = settings.progress_path.exists()
    checks["logs_path"] = settings.logs_path.exists()

    all_healthy = all(checks.values())

    return ReadinessResponse(
        status="ready" if all_healthy else "degraded",
        timestamp=utcnow().isoformat(),
        checks=checks,
    )
