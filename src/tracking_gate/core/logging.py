"""Logging setup for the tracking gate."""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger.

    Calling this more than once only updates the level, so app factories used
    in tests do not stack handlers.
    """
    logger = logging.getLogger("tracking_gate")
    logger.setLevel(level.upper())
    if any(getattr(handler, "_tracking_gate", False) for handler in logger.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._tracking_gate = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
