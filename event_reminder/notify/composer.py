"""Builds the Telegram (HTML parse mode) text for a due reminder."""
from __future__ import annotations

from html import escape
from typing import Dict, Final, Optional

from event_reminder.calendar.models import Event, Reminder
from event_reminder.util.timezone import format_hour_minute, format_month_day

REMINDER_LABELS: Final[Dict[int, str]] = {
    5: "5分後",
    15: "15分後",
    30: "30分後",
    60: "1時間後",
    1440: "明日",
}

TEST_MESSAGE: Final = "🔔 <b>テスト通知</b>\n\nTelegram連携が正常に設定されました！"


def lead_label(minutes_before: int) -> str:
    return REMINDER_LABELS.get(minutes_before, f"{minutes_before}分後")


def compose(event: Event, reminder: Reminder, label: Optional[str] = None) -> str:
    """Render the reminder text. ``event.start_time`` is shown as stored (wall-clock)."""

    label = label or lead_label(reminder.minutes_before)
    start = event.start_time
    lines = [
        "🔔 <b>予定のリマインダー</b>",
        "",
        f"📅 <b>{escape(event.title)}</b>",
        f"⏰ {format_month_day(start)} {format_hour_minute(start)}",
    ]
    if event.location:
        lines.append(f"📍 {escape(event.location)}")
    lines.append("")
    lines.append(f"⏳ {label}に開始します")
    message = "\n".join(lines)

    if reminder.custom_message:
        message += f"\n\n📝 {escape(reminder.custom_message)}"
    return message


def normalize_mention(username: Optional[str]) -> Optional[str]:
    """Return ``@username`` whether or not the stored value carries the sigil."""

    if not username or not username.strip():
        return None
    username = username.strip()
    return username if username.startswith("@") else f"@{username}"


def with_mention(message: str, handle: Optional[str]) -> str:
    if not handle:
        return message
    return f"{handle}\n\n{message}"


__all__ = [
    "REMINDER_LABELS",
    "TEST_MESSAGE",
    "lead_label",
    "compose",
    "normalize_mention",
    "with_mention",
]
