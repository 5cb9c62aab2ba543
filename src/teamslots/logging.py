"""Structured logging configuration using structlog.

Console output for development, JSON lines for production. Modules call
get_logger(__name__) and log snake_case events with keyword context, e.g.
``log.warning("remote_write_failed", key=key, error=str(e))``.
"""

import logging
import sys

import structlog

from teamslots.config import SyncConfig


def setup_logging(json_output: bool = False, log_level: str = "INFO") -> None:
    """Configure structlog processors and the stdlib bridge.

    Args:
        json_output: If True, render JSON lines. If False, console format.
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # httpx logs every request at INFO through stdlib logging
    root = logging.getLogger()
    root.handlers = [logging.StreamHandler(sys.stderr)]
    root.setLevel(numeric_level)
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))


def setup_logging_from_config(config: SyncConfig) -> None:
    """Configure logging from the ``log_json`` / ``log_level`` settings."""
    setup_logging(json_output=config.log_json, log_level=config.log_level)


def log_context(**context: object):
    """Context manager adding fields (key, cycle...) to every log line inside it."""
    return structlog.contextvars.bound_contextvars(**context)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a logger instance bound with the module name.

    Args:
        name: Logger name (typically __name__ from calling module).

    Returns:
        Configured structlog logger.
    """
    return structlog.get_logger(name)
