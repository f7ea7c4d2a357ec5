"""
Structured logging for the state coordinator.

All modules log through `get_logger(__name__)`. Lock transitions and forced
unlocks go through `get_audit_logger`, which binds `audit_trail=True` so
they can be filtered out of the stream.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def configure_logging(level: str = "INFO", *, json_output: bool = False) -> None:
    """Configure stdlib logging and structlog once for the process."""
    log_level = getattr(logging, level.upper(), logging.INFO)

    # Logs go to stderr; stdout is reserved for command output (e.g. `pull`)
    logging.basicConfig(level=log_level, stream=sys.stderr, format="%(message)s", force=True)

    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


def get_audit_logger(name: str) -> Any:
    """Logger for lock lifecycle events that must be traceable after the fact."""
    return get_logger(name).bind(subsystem="state_lock", audit_trail=True)
