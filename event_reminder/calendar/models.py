"""Calendar domain records shared by the reminder pipeline."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import NamedTuple, Optional


class RecurrenceClass(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass
class Event:
    """A calendar entry. ``start_time``/``end_time`` are naive wall-clock values."""

    id: int
    user_id: int
    title: str
    start_time: datetime
    end_time: datetime
    calendar_id: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    all_day: bool = False
    repeat_type: RecurrenceClass = RecurrenceClass.NONE
    notify_self: bool = False

    def __post_init__(self) -> None:
        self.repeat_type = RecurrenceClass(self.repeat_type)


@dataclass
class Reminder:
    id: int
    event_id: int
    minutes_before: int
    notified: bool = False
    notified_at: Optional[datetime] = None
    custom_message: Optional[str] = None


@dataclass
class Friend:
    id: int
    user_id: int
    name: str
    telegram_chat_id: Optional[str] = None
    telegram_username: Optional[str] = None
    color: str = "#6366F1"


@dataclass
class User:
    id: int
    name: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    telegram_username: Optional[str] = None


@dataclass
class TelegramSettings:
    """Bot credentials of one user; friends are messaged through the owner's bot."""

    user_id: int
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    thread_id: Optional[str] = None
    enabled: bool = False


class PendingReminder(NamedTuple):
    reminder: Reminder
    event: Event


class FriendRegistration(NamedTuple):
    friend_id: int
    is_new: bool


__all__ = [
    "RecurrenceClass",
    "Event",
    "Reminder",
    "Friend",
    "User",
    "TelegramSettings",
    "PendingReminder",
    "FriendRegistration",
]
