"""Exceptions raised inside the reminder pipeline."""
from __future__ import annotations


class ReminderError(RuntimeError):
    """Base class for reminder pipeline failures."""


class StoreUnavailableError(ReminderError):
    """Raised when the backing store cannot be reached."""


__all__ = ["ReminderError", "StoreUnavailableError"]
