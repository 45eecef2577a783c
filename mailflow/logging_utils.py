"""Shared logging utilities.

Sync and classification runs are usually driven from a background task whose
stdout can disappear underneath it (a reloading web worker, a closed terminal).
SafeStreamHandler keeps logging to the remaining handlers in that case instead
of raising inside the pipeline.
"""
import logging
from typing import Optional, Union

from . import config


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def _resolve_level(level: Optional[Union[int, str]]) -> int:
    if level is None:
        level = config.LOG_LEVEL
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        return resolved if isinstance(resolved, int) else logging.INFO
    return level


def configure_safe_logging(level: Optional[Union[int, str]] = None) -> logging.Logger:
    """Attach a SafeStreamHandler to the root logger.

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Level name or number; defaults to MAILFLOW_LOG_LEVEL

    Returns:
        The root logger
    """
    level = _resolve_level(level)
    logger = logging.getLogger()
    if not any(isinstance(h, SafeStreamHandler) for h in logger.handlers):
        handler = SafeStreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        handler.setLevel(level)
        logger.addHandler(handler)
        # Some libraries (e.g., OpenAI) set the root logger to WARNING on import.
        if logger.level == logging.NOTSET or logger.level > level:
            logger.setLevel(level)
    # Per-request HTTP logging drowns out pipeline progress at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logger
