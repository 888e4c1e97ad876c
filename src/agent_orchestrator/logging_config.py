"""Structured logging configuration.

Outputs either JSON (for production log shipping) or console format (for
development). Configuration is read from settings or passed explicitly.

Usage:
    from agent_orchestrator.logging_config import setup_logging
    import structlog

    setup_logging()
    logger = structlog.get_logger()
    logger.info("event_name", key1=value1, key2=value2)
"""

import logging
import sys
from typing import Literal

import structlog
from structlog.types import Processor

from agent_orchestrator.config import get_settings


def setup_logging(
    service_name: str | None = None,
    log_format: Literal["json", "console"] | None = None,
    log_level: str | None = None,
) -> None:
    """Configure structured logging with structlog.

    Args:
        service_name: Name bound to every log line. Falls back to settings.
        log_format: "json" for production, "console" for dev. Falls back to settings.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR). Falls back to settings.
    """
    # Explicit args win over settings
    settings = get_settings()
    service_name = service_name or settings.service_name
    log_format = log_format or settings.log_format
    log_level = log_level or settings.log_level

    # Unknown level names fall back to INFO
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    # stdlib logging is the sink for structlog
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        force=True,
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        # ISO timestamps in UTC
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        # execution_id, worker_id, task_id bound per run
        structlog.contextvars.merge_contextvars,
        # Function name and line of the call site
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ),
        # Stack info for exceptions
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        # One JSON object per line for log shipping
        processors.append(structlog.processors.JSONRenderer(sort_keys=False))
    else:
        # Colored key=value output for development
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Service name on every line
    structlog.contextvars.bind_contextvars(service=service_name)

    logger = structlog.get_logger()
    logger.info(
        "logging_initialized",
        service=service_name,
        log_format=log_format,
        log_level=log_level,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)


def bind_execution_context(
    execution_id: str,
    worker_id: str | None = None,
    task_id: str | None = None,
) -> None:
    """Bind execution correlation ids for the current task context."""
    context = {"execution_id": execution_id}
    if worker_id:
        context["worker_id"] = worker_id
    if task_id:
        context["task_id"] = task_id
    structlog.contextvars.bind_contextvars(**context)


def clear_execution_context() -> None:
    """Drop execution correlation ids from the current context."""
    structlog.contextvars.unbind_contextvars("execution_id", "worker_id", "task_id")
