"""
utils/logger.py
---------------
Centralized logging configuration.
All modules should use `get_logger(__name__)` to obtain a logger instance.
Generated SQL is logged at DEBUG; set LOG_LEVEL=DEBUG to see it.
"""

import logging
import sys

from config import LOG_LEVEL

_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_LOGGER_NAMESPACE = "pgmapper"
_initialized = False


def _init_logging() -> None:
    """Configure the package logger once, leaving the root logger to the caller."""
    global _initialized
    if _initialized:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, _DATE_FORMAT))
    base = logging.getLogger(_LOGGER_NAMESPACE)
    base.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
    base.addHandler(handler)
    _initialized = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger instance under the ``pgmapper`` namespace.

    Args:
        name: Usually ``__name__`` of the calling module.

    Returns:
        A configured logging.Logger.
    """
    _init_logging()
    return logging.getLogger(f"{_LOGGER_NAMESPACE}.{name}")
