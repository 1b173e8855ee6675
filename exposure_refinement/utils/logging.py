"""Structlog setup for the batch store and the orchestrator.

Event names are snake_case (``pass_started``, ``persistence_failed``) with
the details as key/value pairs. While a pass runs, ``pass_context`` puts the
user, the pass number and a correlation id into contextvars so that every
event logged during the pass, store events included, carries them.
"""

import sys
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.contextvars import bound_contextvars, merge_contextvars

from exposure_refinement.config.settings import settings


def configure_structured_logging() -> None:
    """
    Configure structlog processors and renderer.

    Console rendering only on an interactive stderr with EXPOSURE_LOG_FORMAT=console,
    JSON lines otherwise.
    """
    processors = [
        merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if sys.stderr.isatty() and settings.log_format.lower() == "console":
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def get_structured_logger(name: str, **context: Any) -> structlog.BoundLogger:
    """
    Get a structured logger with bound context.

    Args:
        name: Component name, logged as ``component``
        **context: Additional context to bind

    Example:
        >>> logger = get_structured_logger("AnalysisOrchestrator")
        >>> logger.info("pass_started", work_list=2)
    """
    logger = structlog.get_logger(name).bind(component=name)
    if context:
        logger = logger.bind(**context)
    return logger


def get_correlation_id() -> str:
    """Generate a correlation ID tying together the log lines of one pass."""
    return str(uuid.uuid4())


@contextmanager
def pass_context(user_name: str, pass_number: int, **extra: Any) -> Iterator[str]:
    """
    Tag every structlog event inside the block with the running pass.

    Yields:
        The correlation id bound for the block
    """
    correlation_id = get_correlation_id()
    with bound_contextvars(
        user_name=user_name,
        pass_number=pass_number,
        correlation_id=correlation_id,
        **extra,
    ):
        yield correlation_id


configure_structured_logging()

__all__ = [
    "configure_structured_logging",
    "get_correlation_id",
    "get_structured_logger",
    "pass_context",
]
