"""Persistence interface consumed by the reminder pipeline."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from event_reminder.calendar.models import Friend, FriendRegistration, PendingReminder, TelegramSettings, User


class ReminderStore(Protocol):
    def list_unnotified(self) -> List[PendingReminder]:
        """Reminders with ``notified = False`` joined with their event."""

    def mark_reminder_notified(self, reminder_id: int, notified_at: datetime) -> None:
        """Set ``notified = True``. Calling it again is a no-op."""

    def get_event_friends(self, event_id: int) -> List[Friend]:
        ...

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        ...

    def get_telegram_settings(self, user_id: int) -> Optional[TelegramSettings]:
        ...


class FriendDirectory(Protocol):
    """Friend lookups used by the bot command handler."""

    def register_friend_from_telegram(
        self,
        user_id: int,
        name: str,
        chat_id: str,
        username: Optional[str],
        color: str,
    ) -> FriendRegistration:
        """Insert a friend unless ``(user_id, chat_id)`` is already registered."""

    def find_friend_by_chat_id(self, chat_id: str) -> Optional[Friend]:
        ...


__all__ = ["ReminderStore", "FriendDirectory"]
