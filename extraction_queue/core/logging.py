"""
Logging Configuration - structlog setup shared by the API and the worker.
"""

import logging

import structlog

from extraction_queue.config import Settings, get_settings


def configure_logging(settings: Settings | None = None) -> None:
    """Configure structured logging with structlog."""
    settings = settings or get_settings()

    # Determine processors based on environment
    if settings.is_production:
        # JSON output for production
        renderer = structlog.processors.JSONRenderer()
    else:
        # Pretty console output for development
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
