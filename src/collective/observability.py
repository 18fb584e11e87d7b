"""Structured logging setup."""

from __future__ import annotations

import logging
import sys
from typing import Any, cast

import structlog


def configure_logging(
    log_level: int | str = logging.INFO,
    json_format: bool = False,
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of the standard library root logger.

    Call once at process startup (the CLI does this). Library modules only
    ever call ``structlog.get_logger()``.

    Args:
        log_level: Minimum log level, as an int or a level name
        json_format: Render JSON lines instead of the coloured console format

    Returns:
        Logger bound to the "collective" name
    """
    if isinstance(log_level, str):
        log_level = logging.getLevelName(log_level.upper())

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return cast("structlog.stdlib.BoundLogger", structlog.get_logger("collective"))
