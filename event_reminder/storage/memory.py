"""Dictionary-backed store used for tests and database-less runs."""
from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from event_reminder.calendar.models import (
    Event,
    Friend,
    FriendRegistration,
    PendingReminder,
    Reminder,
    TelegramSettings,
    User,
)
from event_reminder.util.logging_utils import get_logger


class InMemoryReminderStore:
    """Keeps calendar rows in process memory.

    Returned objects are copies so callers can't mutate stored state behind
    the store's back.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._logger = get_logger(__name__)
        self._users: Dict[int, User] = {}
        self._events: Dict[int, Event] = {}
        self._reminders: Dict[int, Reminder] = {}
        self._friends: Dict[int, Friend] = {}
        self._event_friends: Dict[int, List[int]] = {}
        self._telegram: Dict[int, TelegramSettings] = {}
        self._next_reminder_id = 1
        self._next_friend_id = 1

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    def add_user(self, user: User) -> User:
        with self._lock:
            self._users[user.id] = replace(user)
        return user

    def add_event(self, event: Event) -> Event:
        with self._lock:
            self._events[event.id] = replace(event)
        return event

    def add_reminder(self, reminder: Reminder) -> Reminder:
        with self._lock:
            if reminder.event_id not in self._events:
                raise KeyError(f"event {reminder.event_id} does not exist")
            self._reminders[reminder.id] = replace(reminder)
            self._next_reminder_id = max(self._next_reminder_id, reminder.id + 1)
        return reminder

    def replace_reminders(
        self,
        event_id: int,
        minutes_before: Iterable[int],
        custom_message: Optional[str] = None,
    ) -> List[Reminder]:
        """Drop the event's reminders and create one per lead time."""

        with self._lock:
            for reminder_id in [r.id for r in self._reminders.values() if r.event_id == event_id]:
                del self._reminders[reminder_id]
            created = []
            for minutes in minutes_before:
                reminder = Reminder(
                    id=self._next_reminder_id,
                    event_id=event_id,
                    minutes_before=minutes,
                    custom_message=custom_message,
                )
                self._next_reminder_id += 1
                self._reminders[reminder.id] = reminder
                created.append(replace(reminder))
        return created

    def add_friend(self, friend: Friend) -> Friend:
        with self._lock:
            if not friend.id:
                friend = replace(friend, id=self._next_friend_id)
            self._friends[friend.id] = replace(friend)
            self._next_friend_id = max(self._next_friend_id, friend.id + 1)
        return friend

    def set_event_friends(self, event_id: int, friend_ids: Iterable[int]) -> None:
        with self._lock:
            self._event_friends[event_id] = list(dict.fromkeys(friend_ids))

    def set_telegram_settings(self, settings: TelegramSettings) -> None:
        with self._lock:
            self._telegram[settings.user_id] = replace(settings)

    def delete_event(self, event_id: int) -> None:
        with self._lock:
            self._events.pop(event_id, None)
            self._event_friends.pop(event_id, None)
            for reminder_id in [r.id for r in self._reminders.values() if r.event_id == event_id]:
                del self._reminders[reminder_id]

    def get_reminder(self, reminder_id: int) -> Optional[Reminder]:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            return replace(reminder) if reminder else None

    # ------------------------------------------------------------------
    # ReminderStore
    # ------------------------------------------------------------------
    def list_unnotified(self) -> List[PendingReminder]:
        with self._lock:
            rows = []
            for reminder in self._reminders.values():
                if reminder.notified:
                    continue
                event = self._events.get(reminder.event_id)
                if event is None:
                    continue
                rows.append(PendingReminder(replace(reminder), replace(event)))
            return rows

    def mark_reminder_notified(self, reminder_id: int, notified_at: datetime) -> None:
        with self._lock:
            reminder = self._reminders.get(reminder_id)
            if reminder is None:
                self._logger.warning("Reminder %s vanished before it could be marked", reminder_id)
                return
            if reminder.notified:
                return
            reminder.notified = True
            reminder.notified_at = notified_at

    def get_event_friends(self, event_id: int) -> List[Friend]:
        with self._lock:
            ids = self._event_friends.get(event_id, [])
            return [replace(self._friends[fid]) for fid in ids if fid in self._friends]

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return replace(user) if user else None

    def get_telegram_settings(self, user_id: int) -> Optional[TelegramSettings]:
        with self._lock:
            settings = self._telegram.get(user_id)
            return replace(settings) if settings else None

    # ------------------------------------------------------------------
    # Friend registration
    # ------------------------------------------------------------------
    def register_friend_from_telegram(
        self,
        user_id: int,
        name: str,
        chat_id: str,
        username: Optional[str],
        color: str,
    ) -> FriendRegistration:
        with self._lock:
            for friend in self._friends.values():
                if friend.user_id == user_id and friend.telegram_chat_id == chat_id:
                    return FriendRegistration(friend.id, False)
            friend = Friend(
                id=self._next_friend_id,
                user_id=user_id,
                name=name,
                telegram_chat_id=chat_id,
                telegram_username=username,
                color=color,
            )
            self._next_friend_id += 1
            self._friends[friend.id] = friend
            return FriendRegistration(friend.id, True)

    def find_friend_by_chat_id(self, chat_id: str) -> Optional[Friend]:
        with self._lock:
            for friend_id in sorted(self._friends):
                if self._friends[friend_id].telegram_chat_id == chat_id:
                    return replace(self._friends[friend_id])
            return None


__all__ = ["InMemoryReminderStore"]
