"""Bot commands through which friends register to receive an owner's reminders.

A friend opens the owner's bot and sends ``/register USER_<owner id>`` (or
follows a ``/start USER_<owner id>`` deep link). The chat id of that
conversation becomes the friend's ``telegram_chat_id``, which is what the
dispatcher later uses as ``override_chat_id``.
"""
from __future__ import annotations

import asyncio
import random
from html import escape
from typing import Any, Awaitable, Callable, Dict, Final, List, Mapping, Optional, Protocol, Tuple

from event_reminder.storage.base import FriendDirectory
from event_reminder.util.logging_utils import get_logger

USER_CODE_PREFIX: Final = "USER_"

FRIEND_COLORS: Final[Tuple[str, ...]] = (
    "#EF4444", "#F97316", "#F59E0B", "#EAB308", "#84CC16",
    "#22C55E", "#10B981", "#14B8A6", "#06B6D4", "#0EA5E9",
    "#3B82F6", "#6366F1", "#8B5CF6", "#A855F7", "#D946EF",
    "#EC4899", "#F43F5E",
)

USAGE_TEXT: Final = (
    "📝 <b>友達登録</b>\n\n"
    "登録するには、カレンダーアプリの設定画面から「友達登録コード」を取得し、\n"
    "<code>/register USER_xxxxx</code>\n"
    "の形式で送信してください。"
)
INVALID_PREFIX_TEXT: Final = (
    "❌ 無効なコードです。\n\n"
    "カレンダーアプリの設定画面から正しい「友達登録コード」を取得してください。"
)
INVALID_ID_TEXT: Final = "❌ 無効なコードです。"
REGISTER_FAILED_TEXT: Final = "❌ 登録に失敗しました。しばらくしてから再度お試しください。"
HELP_TEXT: Final = (
    "📚 <b>コマンド一覧</b>\n\n"
    "<code>/register USER_xxxxx</code> - 友達として登録\n"
    "<code>/help</code> - ヘルプを表示\n"
    "<code>/status</code> - 登録状態を確認"
)
NOT_REGISTERED_TEXT: Final = (
    "❌ <b>未登録</b>\n\n"
    "まだ友達として登録されていません。\n"
    "<code>/register USER_xxxxx</code> で登録してください。"
)


class ReplySender(Protocol):
    async def send_reply(self, bot_token: str, chat_id: str, text: str) -> bool:
        ...


class Command:
    """Parsed bot message: ``/name arg ...`` plus who sent it."""

    def __init__(self, name: str, args: List[str], chat_id: str, sender: Mapping[str, Any]) -> None:
        self.name = name
        self.args = args
        self.chat_id = chat_id
        self.sender = sender

    @property
    def display_name(self) -> str:
        parts = [self.sender.get("first_name"), self.sender.get("last_name")]
        return " ".join(str(part) for part in parts if part)

    @property
    def username(self) -> Optional[str]:
        return self.sender.get("username") or None


def parse_command(update: Mapping[str, Any]) -> Optional[Command]:
    """Extract a command from a Telegram ``Update`` payload, or ``None``."""

    message = update.get("message") or {}
    text = (message.get("text") or "").strip()
    chat = message.get("chat") or {}
    if not text.startswith("/") or chat.get("id") is None:
        return None
    name, *args = text.split()
    # "/help@SomeBot" in group chats
    name = name[1:].split("@", 1)[0].lower()
    return Command(name, args, str(chat["id"]), message.get("from") or {})


def parse_user_code(code: str) -> Optional[int]:
    """``USER_42`` -> 42. Raises ``ValueError`` when the prefix is wrong."""

    if not code.startswith(USER_CODE_PREFIX):
        raise ValueError(f"not a registration code: {code!r}")
    try:
        return int(code[len(USER_CODE_PREFIX):])
    except ValueError:
        return None


class FriendRegistrationBot:
    """Answers ``/register``, ``/start``, ``/help`` and ``/status`` sent to an owner's bot."""

    def __init__(
        self,
        store: FriendDirectory,
        sender: ReplySender,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._sender = sender
        self._rng = rng or random.Random()
        self._logger = get_logger(__name__)
        self._handlers: Dict[str, Callable[[Command], Awaitable[str]]] = {
            "register": self._register,
            "start": self._register,
            "help": self._help,
            "status": self._status,
        }

    async def handle_update(self, update: Mapping[str, Any], bot_token: str) -> Optional[str]:
        """Reply to one update received by the bot with ``bot_token``.

        Returns the reply text, or ``None`` when the update is not a known
        command and nothing was sent.
        """

        command = parse_command(update)
        if command is None:
            return None
        handler = self._handlers.get(command.name)
        if handler is None:
            self._logger.debug("Ignoring unknown command /%s", command.name)
            return None
        try:
            reply = await handler(command)
        except Exception:
            self._logger.exception("Error handling /%s from chat %s", command.name, command.chat_id)
            return None
        if not await self._sender.send_reply(bot_token, command.chat_id, reply):
            self._logger.warning("Could not answer /%s in chat %s", command.name, command.chat_id)
        return reply

    def pick_color(self) -> str:
        return self._rng.choice(FRIEND_COLORS)

    async def _register(self, command: Command) -> str:
        if not command.args:
            return USAGE_TEXT
        try:
            owner_id = parse_user_code(command.args[0])
        except ValueError:
            return INVALID_PREFIX_TEXT
        if owner_id is None:
            return INVALID_ID_TEXT

        name = command.display_name
        try:
            result = await asyncio.to_thread(
                self._store.register_friend_from_telegram,
                owner_id,
                name,
                command.chat_id,
                command.username,
                self.pick_color(),
            )
        except Exception:
            self._logger.exception("Friend registration failed for chat %s", command.chat_id)
            return REGISTER_FAILED_TEXT

        if result.is_new:
            self._logger.info("Registered friend %s for user %s", result.friend_id, owner_id)
            return (
                "✅ <b>登録完了！</b>\n\n"
                f"{escape(name)}さん、友達として登録されました。\n"
                "これからカレンダーの予定通知を受け取ることができます。"
            )
        return (
            "ℹ️ <b>既に登録済みです</b>\n\n"
            f"{escape(name)}さんは既に友達として登録されています。"
        )

    async def _help(self, command: Command) -> str:
        return HELP_TEXT

    async def _status(self, command: Command) -> str:
        friend = await asyncio.to_thread(self._store.find_friend_by_chat_id, command.chat_id)
        if friend is None:
            return NOT_REGISTERED_TEXT
        return (
            "✅ <b>登録済み</b>\n\n"
            f"名前: {escape(friend.name)}\n"
            "カレンダーの予定通知を受け取ることができます。"
        )


__all__ = [
    "FRIEND_COLORS",
    "Command",
    "FriendRegistrationBot",
    "parse_command",
    "parse_user_code",
]
