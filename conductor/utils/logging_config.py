"""
Logging configuration using structlog for structured logging.

Every conductor module logs through ``structlog.get_logger(__name__)`` with
snake_case event names and key-value context. This module installs the
processor pipeline once, at process start.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Sets up structlog with a pipeline of processors for logs that carry
    timestamps, log levels, stack traces and bound context variables such as
    the workflow id of the current lane.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, human-readable console
            output otherwise
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Args:
        name: Optional logger name (typically __name__ from calling module)

    Returns:
        A structlog logger instance

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("lane_started", unit_id="1-3", depth=1)
    """
    return structlog.get_logger(name)
