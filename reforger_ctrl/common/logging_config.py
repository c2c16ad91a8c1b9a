"""Central logging configuration utilities for reforger_ctrl.

Logging stays on the standard library. Embedding processes (the CLI, the
scheduler loop) call `configure_logging` once at start-up; library code only
asks for loggers.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}

# Polling and scheduled restarts run on their own threads.
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s"

# asyncssh logs every channel open/close at INFO.
NOISY_LOGGERS = ("asyncssh",)


def _resolve_level(level: str | int | None, env_key: str, default: str) -> int:
    if level is None:
        level = os.environ.get(env_key, default)
    if isinstance(level, str):
        return _LEVEL_MAP.get(level.upper(), _LEVEL_MAP[default])
    return level


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Configure root logger.

    Order of precedence for level:
    1. Explicit `level` argument if given
    2. Environment variable `REFORGER_LOG_LEVEL`
    3. Fallback to `INFO`

    SSH transport logging follows `REFORGER_SSH_LOG_LEVEL` (default `WARNING`).
    """
    logging.basicConfig(
        level=_resolve_level(level, "REFORGER_LOG_LEVEL", "INFO"),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=force,
    )
    ssh_level = _resolve_level(None, "REFORGER_SSH_LOG_LEVEL", "WARNING")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(ssh_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get a project logger; handlers are left to `configure_logging`."""
    return logging.getLogger(name or "reforger_ctrl")


__all__ = ["configure_logging", "get_logger"]
