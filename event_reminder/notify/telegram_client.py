"""Telegram Bot API sender. Messages go out through the event owner's bot."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from event_reminder.calendar.models import TelegramSettings
from event_reminder.config.loader import AppConfig
from event_reminder.notify.composer import TEST_MESSAGE
from event_reminder.storage.base import ReminderStore
from event_reminder.util.logging_utils import get_logger


class TelegramBotClient:
    """Sends HTML messages via ``sendMessage``. Failures are reported as ``False``."""

    def __init__(
        self,
        store: ReminderStore,
        config: AppConfig,
        *,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._store = store
        self._api_base = config.telegram.api_base.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=config.telegram.request_timeout_sec)
        self._session = session
        self._owns_session = session is None
        self._logger = get_logger(__name__)

    async def __aenter__(self) -> "TelegramBotClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def send_message(
        self,
        owner_user_id: int,
        text: str,
        override_chat_id: Optional[str] = None,
    ) -> bool:
        """Deliver ``text`` to the owner's chat, or to ``override_chat_id`` (friend fan-out)."""

        settings = await asyncio.to_thread(self._store.get_telegram_settings, owner_user_id)
        if not settings or not settings.enabled or not settings.bot_token:
            self._logger.info("Telegram not configured for user %s", owner_user_id)
            return False

        chat_id = override_chat_id or settings.chat_id
        if not chat_id:
            self._logger.info("No Telegram chat id for user %s", owner_user_id)
            return False

        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        # スレッドIDはオーナー自身のチャットに送る場合のみ付与する
        if settings.thread_id and not override_chat_id:
            thread_id = _parse_thread_id(settings.thread_id)
            if thread_id is not None:
                payload["message_thread_id"] = thread_id
        return await self._post_send_message(settings.bot_token, payload)

    async def send_test_message(self, settings: TelegramSettings) -> bool:
        """Diagnostic send used from the settings screen, ignores ``enabled``."""

        if not settings.bot_token or not settings.chat_id:
            self._logger.info("Telegram test skipped: settings incomplete")
            return False
        payload: Dict[str, Any] = {"chat_id": settings.chat_id, "text": TEST_MESSAGE, "parse_mode": "HTML"}
        thread_id = _parse_thread_id(settings.thread_id)
        if thread_id is not None:
            payload["message_thread_id"] = thread_id
        return await self._post_send_message(settings.bot_token, payload)

    async def send_reply(self, bot_token: str, chat_id: str, text: str) -> bool:
        """Answer a chat that wrote to a bot, used for command replies."""

        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        return await self._post_send_message(bot_token, payload)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _post_send_message(self, bot_token: str, payload: Dict[str, Any]) -> bool:
        url = f"{self._api_base}/bot{bot_token}/sendMessage"
        try:
            status = await self._post(url, payload)
        except asyncio.TimeoutError:
            self._logger.warning("Telegram sendMessage timed out (chat %s)", payload.get("chat_id"))
            return False
        except aiohttp.ClientError as exc:
            self._logger.warning("Telegram sendMessage failed (chat %s): %s", payload.get("chat_id"), exc)
            return False
        if not 200 <= status < 300:
            self._logger.warning("Telegram sendMessage returned HTTP %s (chat %s)", status, payload.get("chat_id"))
            return False
        return True

    async def _post(self, url: str, payload: Dict[str, Any]) -> int:
        session = self._ensure_session()
        async with session.post(url, json=payload, timeout=self._timeout) as resp:
            if resp.status >= 300:
                body = await resp.text()
                self._logger.debug("Telegram error body: %s", body[:500])
            return resp.status

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


def _parse_thread_id(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


__all__ = ["TelegramBotClient"]
