"""Loguru sink configuration for the service.

The application logs through the shared ``loguru.logger``. This module only
decides where records go and how they look; modules import ``logger``
directly from loguru.
"""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)


def configure_logging(level: str = "INFO") -> None:
    """Replace loguru's default handler with a stderr sink at ``level``.

    Safe to call more than once; each call drops previously added sinks.

    Args:
        level: Minimum level name (e.g. "DEBUG", "INFO").
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level.upper(),
        colorize=False,
        backtrace=False,
        diagnose=False,
    )
