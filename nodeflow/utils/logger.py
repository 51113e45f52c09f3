"""
Logging configuration for nodeflow
One handler on the "nodeflow" package logger; module loggers propagate to it
"""
import logging
import sys
from typing import Optional, TextIO

from ..core.config import Config

ROOT_LOGGER = "nodeflow"
DEFAULT_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


def _configured_level() -> int:
    if Config.LOG_LEVEL:
        level = logging.getLevelName(Config.LOG_LEVEL.upper())
        if isinstance(level, int):
            return level
    return logging.DEBUG if Config.DEBUG else logging.INFO


def setup_logger(
    level: Optional[int] = None,
    format_string: Optional[str] = None,
    stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Configure the package logger (idempotent)

    Args:
        level: Log level (default: NODEFLOW_LOG_LEVEL, else DEBUG if NODEFLOW_DEBUG, else INFO)
        format_string: Custom format string (optional)
        stream: Output stream (default: stdout)

    Returns:
        The "nodeflow" logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    if logger.handlers:
        return logger

    logger.setLevel(level if level is not None else _configured_level())
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    logger.addHandler(handler)

    # Keep engine output out of host applications' root handlers
    logger.propagate = False
    return logger


def redirect_logs(stream: TextIO) -> Optional[TextIO]:
    """
    Send package log output to another stream (the CLI uses stderr for --json)

    Returns:
        The stream previously in use, to restore later
    """
    previous = None
    for handler in setup_logger().handlers:
        if isinstance(handler, logging.StreamHandler):
            previous = handler.setStream(stream) or previous
    return previous


def get_logger(name: str) -> logging.Logger:
    """
    Get a module logger inside the "nodeflow" hierarchy

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    setup_logger()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
