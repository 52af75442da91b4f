"""Decides on which calendar dates a (possibly repeating) event occurs."""
from __future__ import annotations

from datetime import date, timedelta
from typing import Iterable, Iterator, List

from event_reminder.calendar.models import Event, RecurrenceClass
from event_reminder.util.timezone import LocalClock


def occurs_on(anchor: date, recurrence: RecurrenceClass | str, candidate: date) -> bool:
    """Return True when an event anchored on ``anchor`` occurs on ``candidate``.

    Both dates must already be local calendar dates. Monthly events never roll
    over: an event anchored on the 31st does not occur in 30-day months.
    """

    recurrence = RecurrenceClass(recurrence)
    if candidate < anchor:
        return False
    if candidate == anchor:
        return True

    if recurrence is RecurrenceClass.DAILY:
        return True
    if recurrence is RecurrenceClass.WEEKLY:
        return candidate.weekday() == anchor.weekday()
    if recurrence is RecurrenceClass.MONTHLY:
        return candidate.day == anchor.day
    if recurrence is RecurrenceClass.YEARLY:
        return candidate.day == anchor.day and candidate.month == anchor.month
    return False


def event_occurs_on(event: Event, candidate: date, clock: LocalClock) -> bool:
    anchor = clock.to_local_parts(event.start_time).date()
    return occurs_on(anchor, event.repeat_type, candidate)


def iter_occurrence_dates(
    anchor: date,
    recurrence: RecurrenceClass | str,
    start: date,
    end: date,
) -> Iterator[date]:
    """Yield every date in ``[start, end]`` on which the event occurs."""

    current = max(start, anchor)
    while current <= end:
        if occurs_on(anchor, recurrence, current):
            yield current
        current += timedelta(days=1)


def events_on_date(events: Iterable[Event], candidate: date, clock: LocalClock) -> List[Event]:
    """Events shown on ``candidate``'s day view, ordered by time of day."""

    matches = [event for event in events if event_occurs_on(event, candidate, clock)]
    matches.sort(key=lambda event: (not event.all_day, clock.to_wall_clock(event.start_time).time()))
    return matches


__all__ = ["occurs_on", "event_occurs_on", "iter_occurrence_dates", "events_on_date"]
