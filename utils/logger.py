"""Rich-formatted logging shared by every pipeline module."""
import logging
from typing import Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

import config

# Progress bars and log lines go through the same console so they do not interleave
console = Console()

_loggers: Dict[str, logging.Logger] = {}


def _level(value) -> int:
    if isinstance(value, int):
        return value
    return logging.getLevelName(str(value).upper())


def setup_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get a pipeline logger writing through the shared rich console.

    Args:
        name: Logger name, usually the module's __name__
        level: Logging level; defaults to config.LOG_LEVEL

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(_level(level if level is not None else config.LOG_LEVEL))
    logger.propagate = False

    if name not in _loggers:
        handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        _loggers[name] = logger

    return logger


def set_level(level) -> None:
    """Change the level of every logger created through setup_logger."""
    for logger in _loggers.values():
        logger.setLevel(_level(level))
