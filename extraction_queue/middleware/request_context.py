"""
Request Context Middleware - Correlation IDs and structured request logging.

The correlation ID is bound into structlog's context variables, so every
log line emitted while serving the request carries it.
"""

import time
from typing import Callable
from uuid import uuid4

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

CORRELATION_ID_HEADER = "X-Correlation-ID"

logger = structlog.get_logger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with a correlation ID and log its outcome."""

    async def dispatch(
        self, request: Request, call_next: Callable
    ) -> Response:
        correlation_id = request.headers.get(
            CORRELATION_ID_HEADER, uuid4().hex[:16]
        )
        start_time = time.perf_counter()

        with structlog.contextvars.bound_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                await logger.aerror(
                    "request_failed",
                    error=str(e),
                    duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
                )
                raise

            await logger.ainfo(
                "request_completed",
                status_code=response.status_code,
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )

        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response
