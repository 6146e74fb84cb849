"""Logging for Taskrail.

Every module logs through ``get_logger(tag)``, which returns the
``taskrail.<tag>`` logger. One stderr handler hangs off the ``taskrail``
logger and prints records as ``[tag] message``.
"""

from __future__ import annotations

import logging
import os
import sys
import threading

_ROOT = "taskrail"
_LEVEL_ENV = "TASKRAIL_LOG_LEVEL"

_lock = threading.Lock()
_handler: logging.Handler | None = None


class _TagFormatter(logging.Formatter):
    """Render records as ``[tag] message`` where *tag* drops the ``taskrail.`` prefix."""

    def __init__(self) -> None:
        super().__init__("[%(tag)s] %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        record.tag = name[len(_ROOT) + 1 :] if name.startswith(_ROOT + ".") else name
        return super().format(record)


def _resolve_level(verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    configured = os.environ.get(_LEVEL_ENV, "").strip().upper()
    level = logging.getLevelName(configured) if configured else logging.WARNING
    return level if isinstance(level, int) else logging.WARNING


def setup_logging(verbose: bool = False) -> None:
    """Attach the stderr handler to the ``taskrail`` logger.

    The handler is added only once. The level is WARNING unless
    ``TASKRAIL_LOG_LEVEL`` names another one; *verbose* forces DEBUG, also
    when logging was already set up lazily by :func:`get_logger`.
    Records do not propagate to the root logger.
    """
    global _handler
    root = logging.getLogger(_ROOT)
    with _lock:
        if _handler is None:
            _handler = logging.StreamHandler(sys.stderr)
            _handler.setFormatter(_TagFormatter())
            root.addHandler(_handler)
            root.propagate = False
            root.setLevel(_resolve_level(verbose))
        elif verbose:
            root.setLevel(logging.DEBUG)


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(f"{_ROOT}.{name}")
