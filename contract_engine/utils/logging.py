"""
Structured logging configuration using structlog.

Workflow and registry events are emitted through structlog; lower-level
services log through the standard library, which is routed to the same
stream so both end up in one place.
"""

import logging
import sys
from typing import IO, Optional

import structlog

_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _resolve_level(log_level: str) -> int:
    name = (log_level or "INFO").upper()
    if name not in _LEVELS:
        name = "INFO"
    return getattr(logging, name)


def setup_logging(
    log_level: str = "INFO",
    json_format: bool = True,
    stream: Optional[IO[str]] = None
) -> None:
    """
    Configure structured logging for the engine.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
            Unknown names fall back to INFO.
        json_format: Emit JSON lines when True, coloured console output otherwise
        stream: Output stream, stdout by default
    """
    level = _resolve_level(log_level)
    stream = stream or sys.stdout

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=stream,
        level=level,
        force=True,
    )


def get_logger(name: Optional[str] = None):
    """Get a structlog logger, bound to a component name when given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(component=name)
    return logger
