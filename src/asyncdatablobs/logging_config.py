"""Structured logging configuration.

The library never configures logging on import. Applications call
``configure_logging`` once; containers receive a logger explicitly or fall
back to ``get_logger("asyncdatablobs")``.
"""

import logging
from typing import Any, Literal

import structlog


def configure_logging(
    level: int = logging.INFO, log_format: Literal["json", "console"] = "json"
) -> None:
    """Configure structlog with a stable structured format.

    Args:
        level: Minimum level to emit.
        log_format: ``json`` for machine-readable lines, ``console`` for humans.
    """
    renderer: Any
    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    """Return a structlog logger bound to ``logger=<name>``."""
    return structlog.get_logger(name).bind(logger=name)
