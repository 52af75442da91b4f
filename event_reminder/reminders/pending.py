"""Selects reminders whose notification time has arrived."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List

from event_reminder.calendar.models import Event, PendingReminder, Reminder
from event_reminder.storage.base import ReminderStore


def notify_time(event: Event, reminder: Reminder) -> datetime:
    """Wall-clock instant at which ``reminder`` fires for ``event``'s start."""

    return event.start_time - timedelta(minutes=reminder.minutes_before)


def is_due(event: Event, reminder: Reminder, now: datetime) -> bool:
    if reminder.notified:
        return False
    return notify_time(event, reminder) <= now


def due_reminders(rows: Iterable[PendingReminder], now: datetime) -> List[PendingReminder]:
    """Filter ``rows`` down to due reminders, keeping the input order.

    Only the literal ``start_time`` of the event is considered; later
    occurrences of repeating events are not projected.
    """

    return [
        PendingReminder(reminder, event)
        for reminder, event in rows
        if is_due(event, reminder, now)
    ]


def get_pending_reminders(store: ReminderStore, now: datetime) -> List[PendingReminder]:
    return due_reminders(store.list_unnotified(), now)


__all__ = ["notify_time", "is_due", "due_reminders", "get_pending_reminders"]
