"""
Logging helper shared by the entry points.
"""

from __future__ import annotations

import logging


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    """Create a logger with uniform format.

    Params:
        name: logger name, usually the package name or __name__ of the caller.
        level: logging level string (e.g., 'DEBUG', 'INFO').

    Returns:
        Configured logging.Logger instance.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s | %(levelname)s | %(name)s: %(message)s")
        )
        logger.addHandler(handler)
    return logger


def rank_filter(rank: int) -> logging.Filter:
    """Filter that keeps only WARNING and above on ranks other than 0."""

    class _RankFilter(logging.Filter):
        def filter(self, record: logging.LogRecord) -> bool:
            return rank == 0 or record.levelno >= logging.WARNING

    return _RankFilter()
