"""Centralized logger factory."""
from __future__ import annotations

import logging
from typing import Final, Iterable

_LOG_FORMAT: Final = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# apscheduler logs every interval run at INFO
_NOISY_LOGGERS: Final = ("apscheduler.executors.default", "apscheduler.scheduler")


def configure_logging(level: str = "INFO", *, quiet: Iterable[str] = _NOISY_LOGGERS) -> None:
    if logging.getLogger().handlers:
        logging.getLogger().setLevel(level)
    else:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
