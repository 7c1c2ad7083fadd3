from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

_DEFAULT_LOGGER_NAME = "depthcut"


def get_console(stderr: bool = False) -> Console:
    return Console(stderr=stderr)


def setup_logging(level: str = "INFO", logger_name: str = _DEFAULT_LOGGER_NAME) -> logging.Logger:
    """Configure a Rich logger for the depthcut namespace (idempotent)."""
    resolved = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger(logger_name)
    logger.setLevel(resolved)

    # Avoid adding duplicate handlers if called multiple times.
    handlers = [h for h in logger.handlers if isinstance(h, RichHandler)]
    if not handlers:
        handler = RichHandler(rich_tracebacks=True, console=get_console(stderr=True))
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        logger.addHandler(handler)
        handlers = [handler]
    for handler in handlers:
        handler.setLevel(resolved)

    logger.propagate = False
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(_DEFAULT_LOGGER_NAME)
    if name.startswith(_DEFAULT_LOGGER_NAME):
        return logging.getLogger(name)
    return logging.getLogger(f"{_DEFAULT_LOGGER_NAME}.{name}")
