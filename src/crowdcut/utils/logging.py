"""Logging utilities for CrowdCut."""

from __future__ import annotations

import logging
import sys
from typing import TextIO


def get_logger(
    name: str = "crowdcut",
    level: int = logging.INFO,
    stream: TextIO = sys.stderr,
) -> logging.Logger:
    """Get a configured logger for CrowdCut.

    Args:
        name: Logger name.
        level: Logging level.
        stream: Output stream.

    Returns:
        Configured logger instance.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(stream)
        handler.setLevel(level)

        formatter = logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(level)
    return logger


def format_duration(seconds: float) -> str:
    """Format a duration as M:SS.s for log lines."""
    minutes, secs = divmod(max(0.0, seconds), 60)
    return f"{int(minutes)}:{secs:04.1f}"
