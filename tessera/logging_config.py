"""Structured logging configuration.

The package logs through structlog. Logging is configured once with a
stable JSON format unless the embedding application configured structlog
itself, in which case its setup is left untouched.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

__all__ = ["configure_logging", "get_logger"]


def configure_logging(level: str = "WARNING", force: bool = False) -> None:
    """Configure structlog for the package.

    Args:
        level: Minimum level name, e.g. ``"DEBUG"``.
        force: Reconfigure even if structlog is already configured.
    """
    if structlog.is_configured() and not force:
        return

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


def get_logger(name: str) -> Any:
    """Return a module logger instance.

    Args:
        name: Logger name, usually __name__.

    Returns:
        A structlog logger with structured output.
    """
    return structlog.get_logger(name)
