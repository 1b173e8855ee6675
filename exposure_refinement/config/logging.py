"""Loguru setup for the engine, scanners and CLI.

Log lines always go to stderr: the CLI renders its tables on stdout and the
two must not interleave. Records carry a ``component`` extra naming the part
of the engine that emitted them.
"""

import sys
from typing import Optional

from loguru import logger

from exposure_refinement.config.settings import settings

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[component]}</cyan> | <level>{message}</level>"
)


def configure_logging(level: Optional[str] = None, log_format: Optional[str] = None) -> None:
    """
    (Re)configure the loguru sink.

    Args:
        level: Minimum level, defaults to EXPOSURE_LOG_LEVEL
        log_format: "console" or "json", defaults to EXPOSURE_LOG_FORMAT.
            Console output is only used on an interactive terminal.
    """
    level = (level or settings.log_level).upper()
    log_format = (log_format or settings.log_format).lower()

    logger.remove()
    logger.configure(extra={"component": "exposure_refinement"})

    if log_format == "console" and sys.stderr.isatty():
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)
    else:
        logger.add(sys.stderr, format="{message}", level=level, serialize=True, diagnose=False)


def get_logger(component: str):
    """
    Logger bound to a component name, e.g. ``get_logger("engine.merge")``.
    """
    return logger.bind(component=component)


configure_logging()

__all__ = ["logger", "get_logger", "configure_logging"]
