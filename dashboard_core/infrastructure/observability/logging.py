"""
Structured logging setup for the instructor dashboard core.
Provides JSON-formatted logs with consistent fields for sync and export events.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            # View/scope context bound with structlog.contextvars
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("socketio").setLevel(logging.WARNING)
    logging.getLogger("engineio").setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


# Convenience functions for common log patterns
def log_sync_transition(scope_id: str, previous: str, current: str, **extra: Any) -> None:
    """Log a sync coordinator state change with consistent fields."""
    logger = get_logger("sync")

    logger.info(
        "Sync state changed",
        scope_id=scope_id,
        previous_state=previous,
        state=current,
        event_type="sync_transition",
        **extra,
    )


def log_export_result(
    scope_id: str,
    export_format: str,
    succeeded: bool,
    filename: str = None,
    error: str = None,
) -> None:
    """Log the terminal outcome of an export job."""
    logger = get_logger("export")

    log_data = {
        "scope_id": scope_id,
        "format": export_format,
        "succeeded": succeeded,
        "event_type": "export_result",
    }

    if filename:
        log_data["filename"] = filename
    if error:
        log_data["error"] = error

    if succeeded:
        logger.info("Export completed", **log_data)
    else:
        logger.error("Export failed", **log_data)
