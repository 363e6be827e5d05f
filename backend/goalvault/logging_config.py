"""Process-wide logging setup for the goalvault logger hierarchy."""

from __future__ import annotations

import logging
import sys

_LOGGER_PREFIX = "goalvault"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_configured = False


def configure_logging(level: str | int = logging.INFO, stream=None) -> None:
    """Attach one stream handler to the `goalvault` logger (idempotent)."""
    global _configured
    if _configured:
        return
    _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root_logger.addHandler(handler)


def reset_logging() -> None:
    """Drop handlers so tests can reconfigure."""
    global _configured
    _configured = False
    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.handlers.clear()
    root_logger.setLevel(logging.NOTSET)
    root_logger.propagate = True
