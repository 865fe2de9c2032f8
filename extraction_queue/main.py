"""
Extraction Queue - FastAPI Main Application

Admin surface over the job queue: enqueue, inspect, retry and maintain jobs,
and read progress snapshots and agent run logs. Workers run separately
(`extraction-worker`).
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from extraction_queue import __version__
from extraction_queue.config import get_settings
from extraction_queue.core.errors import (
    AppException,
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from extraction_queue.core.logging import configure_logging
from extraction_queue.database import close_db, init_db
from extraction_queue.middleware import RequestContextMiddleware


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()
    logger = structlog.get_logger(__name__)

    await logger.ainfo(
        "application_starting",
        app_name=settings.app_name,
        version=__version__,
        environment=settings.app_env,
    )

    await init_db()
    await logger.ainfo("database_initialized")

    yield

    await logger.ainfo("application_stopping")
    await close_db()
    await logger.ainfo("database_closed")


def create_application() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Extraction Queue",
        description=(
            "Persistent job queue whose workers scaffold apps from GitHub "
            "sources and run a coding agent over them."
        ),
        version=__version__,
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if not settings.is_production else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    from extraction_queue.api.health import router as health_router
    from extraction_queue.api.jobs import router as jobs_router

    app.include_router(health_router)
    app.include_router(jobs_router)

    return app


app = create_application()
