"""Centralized logging utility with colored console output."""

import logging
import os
from typing import Optional, Union

from rich.console import Console
from rich.logging import RichHandler


_loggers: dict[str, logging.Logger] = {}


def _default_level() -> int:
    """Resolve the default level from LOG_LEVEL (name or number)."""
    raw = os.getenv("LOG_LEVEL", "INFO").strip().upper()
    if raw.isdigit():
        return int(raw)
    resolved = logging.getLevelName(raw)
    return resolved if isinstance(resolved, int) else logging.INFO


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get or create a logger with colored console output.

    Args:
        name: Logger name (typically __name__ of calling module).
        level: Optional logging level. Defaults to LOG_LEVEL env or INFO.

    Returns:
        Configured logger instance.
    """
    if name in _loggers:
        return _loggers[name]

    logger = logging.getLogger(name)
    logger.setLevel(level or _default_level())

    if not logger.handlers:
        console = Console(stderr=True)
        handler = RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)

    logger.propagate = False
    _loggers[name] = logger
    return logger


def set_log_level(level: Union[int, str]) -> None:
    """
    Re-level every logger handed out so far.

    Args:
        level: Numeric level or level name (e.g. "DEBUG").
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        level = resolved if isinstance(resolved, int) else logging.INFO
    for logger in _loggers.values():
        logger.setLevel(level)
