"""Structured logging configuration.

Domain services log through the standard library; their records are
rendered by the same structlog processor chain as the application's
bound loggers.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import Processor

ENGINE_LOGGER = "container_engine"


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Set up structured logging with structlog."""
    log_level = getattr(logging, level.upper())

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    engine_logger = logging.getLogger(ENGINE_LOGGER)
    for existing in list(engine_logger.handlers):
        engine_logger.removeHandler(existing)
    engine_logger.addHandler(handler)
    engine_logger.setLevel(log_level)
    engine_logger.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_context: Any) -> structlog.stdlib.BoundLogger:
    """Get a bound logger instance."""
    logger = structlog.get_logger(name or ENGINE_LOGGER)
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


def bind_intent(intent: str, **context: Any) -> None:
    """Bind the current intent to every log line of this thread."""
    structlog.contextvars.bind_contextvars(intent=intent, **context)


def clear_intent() -> None:
    structlog.contextvars.clear_contextvars()
