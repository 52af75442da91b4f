"""Wall-clock helpers for the fixed display timezone.

Every timestamp stored by the calendar is a naive ``datetime`` that already
represents local wall-clock time in the display timezone (GMT+8 by default).
``LocalClock`` is the only place where real (aware) instants are turned into
that representation, so storage, due-time comparison and recurrence all work
on the same kind of value.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Final
from zoneinfo import ZoneInfo

DISPLAY_TIMEZONE: Final = "Asia/Kuala_Lumpur"


@dataclass(frozen=True)
class LocalParts:
    year: int
    month: int
    day: int
    hour: int
    minute: int

    def date(self) -> date:
        return date(self.year, self.month, self.day)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalClock:
    """Converts instants into naive wall-clock values of a single timezone."""

    def __init__(
        self,
        tz_name: str = DISPLAY_TIMEZONE,
        *,
        now_func: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._tz_name = tz_name
        self._tz = ZoneInfo(tz_name)
        self._now_func = now_func

    @property
    def tz_name(self) -> str:
        return self._tz_name

    def now(self) -> datetime:
        """Current wall-clock time (naive, seconds precision kept)."""

        return self.to_wall_clock(self._now_func())

    def to_wall_clock(self, value: datetime) -> datetime:
        # naive values are already wall-clock
        if value.tzinfo is None:
            return value
        return value.astimezone(self._tz).replace(tzinfo=None)

    def to_local_parts(self, value: datetime) -> LocalParts:
        local = self.to_wall_clock(value)
        return LocalParts(local.year, local.month, local.day, local.hour, local.minute)

    def today_local(self) -> date:
        return self.now().date()


def format_month_day(value: datetime) -> str:
    return f"{value.month}月{value.day}日"


def format_hour_minute(value: datetime) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


__all__ = [
    "DISPLAY_TIMEZONE",
    "LocalParts",
    "LocalClock",
    "format_month_day",
    "format_hour_minute",
]
