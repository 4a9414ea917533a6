"""Logging configuration for turnloop."""

import logging
import sys
from contextlib import AbstractContextManager

import structlog

from turnloop.config import get_config


def configure_logging(level: str | None = None) -> None:
    """Configure structured logging for turnloop.

    Events go to stderr so streamed model output on stdout stays clean.
    """
    config = get_config()

    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def task_log_context(task_id: str) -> AbstractContextManager:
    """Bind ``task_id`` to every event logged inside the block, hooks and tools included."""
    return structlog.contextvars.bound_contextvars(task_id=task_id)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
