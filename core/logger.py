"""
Logging setup shared by all modules of the import service.

Every module logs through ``setup_logger(__name__)``. Loggers created this
way write to stdout with one common format; ``set_log_level`` adjusts all of
them at once after settings are loaded.
"""
import logging
import os
import sys
from typing import Dict, Optional

LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

_loggers: Dict[str, logging.Logger] = {}


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if name not in _LEVELS:
        name = "INFO"
    return getattr(logging, name)


def setup_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Return the logger for a module, creating its stdout handler once.

    Args:
        name: Logger name (usually __name__)
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL. Defaults to env LOG_LEVEL,
            unknown values fall back to INFO.

    Returns:
        Configured logger instance
    """
    log_level = _resolve_level(level)
    logger = logging.getLogger(name)
    logger.setLevel(log_level)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    _loggers[name] = logger
    return logger


def set_log_level(level: str) -> None:
    """Apply a level to every logger created through setup_logger."""
    log_level = _resolve_level(level)
    for logger in _loggers.values():
        logger.setLevel(log_level)
