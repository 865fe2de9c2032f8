"""Middleware package - Request tracing and logging."""

from extraction_queue.middleware.request_context import (
    CORRELATION_ID_HEADER,
    RequestContextMiddleware,
)

__all__ = [
    "RequestContextMiddleware",
    "CORRELATION_ID_HEADER",
]
