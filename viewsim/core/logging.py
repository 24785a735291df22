"""structlog configuration.

``setup_logging`` configures the process default used by ``structlog.get_logger()``.
``make_logger`` builds an explicit handle for components that take a ``logger``
argument, so two simulations in one process can log at different levels.
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.typing import EventDict, FilteringBoundLogger, Processor, WrappedLogger

# Above CRITICAL: nothing is emitted
SILENT = logging.CRITICAL + 10

LEVELS: dict[str, int] = {
    "silent": SILENT,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def normalize_level(level: str | None) -> int:
    """Map a level name to a logging level; unknown or empty names fall back to info."""
    if not level:
        return logging.INFO
    return LEVELS.get(level.strip().lower(), logging.INFO)


def _drop_everything(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    raise structlog.DropEvent


def _processors(level: int, renderer: Processor | None = None) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        renderer or structlog.dev.ConsoleRenderer(colors=False),
    ]
    if level >= SILENT:
        processors.insert(0, _drop_everything)
    return processors


def _wrapper_class(level: int) -> type[FilteringBoundLogger]:
    # structlog only builds filtering loggers for the standard levels
    return structlog.make_filtering_bound_logger(min(level, logging.CRITICAL))


def setup_logging(level: str | None = "info", json_output: bool = False) -> None:
    numeric = normalize_level(level)
    renderer = structlog.processors.JSONRenderer() if json_output else None
    structlog.configure(
        processors=_processors(numeric, renderer),
        wrapper_class=_wrapper_class(numeric),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


def make_logger(level: str | None = "info", **initial_values: object) -> FilteringBoundLogger:
    numeric = normalize_level(level)
    logger: FilteringBoundLogger = structlog.wrap_logger(
        structlog.PrintLogger(file=sys.stderr),
        processors=_processors(numeric),
        wrapper_class=_wrapper_class(numeric),
    )
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger
