"""Logging setup for opawasm."""

import logging
import sys
from typing import Optional


def setup_logging(level: int | str = logging.INFO, format_string: Optional[str] = None) -> logging.Logger:
    """
    Set up logging for opawasm.

    Args:
        level: Logging level, as a number or a level name (default: INFO)
        format_string: Custom format string (optional)

    Returns:
        Configured package logger
    """
    if format_string is None:
        format_string = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_string,
        stream=sys.stderr,
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    logger = logging.getLogger("opawasm")
    logger.setLevel(level)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for a specific module."""
    return logging.getLogger(f"opawasm.{name}")
