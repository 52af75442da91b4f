"""Fans a composed reminder out to the event owner and tagged friends."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from event_reminder.calendar.models import Event, Friend, Reminder
from event_reminder.notify.composer import normalize_mention, with_mention
from event_reminder.storage.base import ReminderStore
from event_reminder.util.logging_utils import get_logger


class MessageSender(Protocol):
    async def send_message(
        self,
        owner_user_id: int,
        text: str,
        override_chat_id: Optional[str] = None,
    ) -> bool:
        ...


@dataclass
class DispatchResult:
    attempted_owner: bool = False
    owner_sent: bool = False
    friends_attempted: int = 0
    friends_sent: int = 0
    failed_friends: List[int] = field(default_factory=list)

    @property
    def sent(self) -> bool:
        return self.owner_sent


class NotificationDispatcher:
    """Best-effort delivery: each recipient succeeds or fails on its own."""

    def __init__(
        self,
        store: ReminderStore,
        sender: MessageSender,
        *,
        friend_concurrency: bool = True,
    ) -> None:
        self._store = store
        self._sender = sender
        self._friend_concurrency = friend_concurrency
        self._logger = get_logger(__name__)

    async def dispatch(self, event: Event, reminder: Reminder, message: str) -> DispatchResult:
        result = DispatchResult()

        owner_text = with_mention(message, await self._owner_mention(event))
        result.attempted_owner = True
        result.owner_sent = await self._send(event.user_id, owner_text, None, f"owner {event.user_id}")

        friends = await self._resolve_friends(event)
        targets = [friend for friend in friends if friend.telegram_chat_id]
        result.friends_attempted = len(targets)
        if self._friend_concurrency:
            outcomes = await asyncio.gather(
                *(self._send_to_friend(event, friend, message) for friend in targets)
            )
        else:
            outcomes = [await self._send_to_friend(event, friend, message) for friend in targets]

        for friend, ok in zip(targets, outcomes):
            if ok:
                result.friends_sent += 1
            else:
                result.failed_friends.append(friend.id)

        self._logger.debug(
            "Reminder %s dispatched: owner=%s friends=%d/%d",
            reminder.id,
            result.owner_sent,
            result.friends_sent,
            result.friends_attempted,
        )
        return result

    async def _owner_mention(self, event: Event) -> Optional[str]:
        if not event.notify_self:
            return None
        try:
            owner = await asyncio.to_thread(self._store.get_user_by_id, event.user_id)
        except Exception:
            self._logger.exception("Failed to load owner %s for mention", event.user_id)
            return None
        if owner is None:
            return None
        return normalize_mention(owner.telegram_username)

    async def _resolve_friends(self, event: Event) -> List[Friend]:
        try:
            return await asyncio.to_thread(self._store.get_event_friends, event.id)
        except Exception:
            self._logger.exception("Failed to resolve tagged friends for event %s", event.id)
            return []

    async def _send_to_friend(self, event: Event, friend: Friend, message: str) -> bool:
        ok = await self._send(event.user_id, message, friend.telegram_chat_id, f"friend {friend.name}")
        if ok:
            self._logger.info("Sent notification to friend %s (%s)", friend.name, friend.telegram_chat_id)
        return ok

    async def _send(self, owner_user_id: int, text: str, chat_id: Optional[str], label: str) -> bool:
        try:
            return bool(await self._sender.send_message(owner_user_id, text, chat_id))
        except Exception:
            self._logger.warning("Delivery to %s failed", label, exc_info=True)
            return False


__all__ = ["MessageSender", "DispatchResult", "NotificationDispatcher"]
