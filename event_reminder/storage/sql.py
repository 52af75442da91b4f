"""SQLAlchemy-backed store mirroring the calendar database schema."""
from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, create_engine, delete, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from event_reminder.calendar import models
from event_reminder.reminders.errors import StoreUnavailableError
from event_reminder.util.logging_utils import get_logger


class Base(DeclarativeBase):
    pass


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    telegram_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


class EventRow(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    calendar_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # ローカル時刻 (naive) のまま保存する
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    repeat_type: Mapped[str] = mapped_column(String(16), nullable=False, default="none")
    notify_self: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class ReminderRow(Base):
    __tablename__ = "reminders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    minutes_before: Mapped[int] = mapped_column(Integer, nullable=False)
    notified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    custom_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class FriendRow(Base):
    __tablename__ = "friends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    telegram_chat_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    telegram_username: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    color: Mapped[str] = mapped_column(String(7), nullable=False, default="#6366F1")


class EventFriendRow(Base):
    __tablename__ = "event_friends"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), nullable=False, index=True)
    friend_id: Mapped[int] = mapped_column(ForeignKey("friends.id"), nullable=False)


class TelegramSettingsRow(Base):
    __tablename__ = "telegram_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, unique=True)
    bot_token: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    chat_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    thread_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


def _to_event(row: EventRow) -> models.Event:
    return models.Event(
        id=row.id,
        user_id=row.user_id,
        calendar_id=row.calendar_id,
        title=row.title,
        description=row.description,
        location=row.location,
        start_time=row.start_time,
        end_time=row.end_time,
        all_day=row.all_day,
        repeat_type=models.RecurrenceClass(row.repeat_type),
        notify_self=row.notify_self,
    )


def _to_reminder(row: ReminderRow) -> models.Reminder:
    return models.Reminder(
        id=row.id,
        event_id=row.event_id,
        minutes_before=row.minutes_before,
        notified=row.notified,
        notified_at=row.notified_at,
        custom_message=row.custom_message,
    )


def _to_friend(row: FriendRow) -> models.Friend:
    return models.Friend(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        telegram_chat_id=row.telegram_chat_id,
        telegram_username=row.telegram_username,
        color=row.color,
    )


class SqlReminderStore:
    """ReminderStore over a relational database (SQLite, MySQL, PostgreSQL)."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self._logger = get_logger(__name__)
        engine_kwargs: dict = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url in {"sqlite://", "sqlite:///:memory:"}:
                # one shared connection so every thread sees the same database
                engine_kwargs["poolclass"] = StaticPool
        self._engine = create_engine(url, **engine_kwargs)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self._engine)

    def dispose(self) -> None:
        self._engine.dispose()

    @contextlib.contextmanager
    def session_scope(self) -> Iterator[Session]:
        try:
            session = self._sessions()
        except OperationalError as exc:
            raise StoreUnavailableError(str(exc)) from exc
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            raise StoreUnavailableError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------
    def add_user(self, user: models.User) -> models.User:
        with self.session_scope() as session:
            row = UserRow(
                name=user.name,
                telegram_chat_id=user.telegram_chat_id,
                telegram_username=user.telegram_username,
            )
            if user.id:
                row.id = user.id
            session.add(row)
            session.flush()
            user.id = row.id
        return user

    def add_event(self, event: models.Event) -> models.Event:
        with self.session_scope() as session:
            row = EventRow(
                user_id=event.user_id,
                calendar_id=event.calendar_id,
                title=event.title,
                description=event.description,
                location=event.location,
                start_time=event.start_time,
                end_time=event.end_time,
                all_day=event.all_day,
                repeat_type=event.repeat_type.value,
                notify_self=event.notify_self,
            )
            if event.id:
                row.id = event.id
            session.add(row)
            session.flush()
            event.id = row.id
        return event

    def add_reminder(self, reminder: models.Reminder) -> models.Reminder:
        with self.session_scope() as session:
            row = ReminderRow(
                event_id=reminder.event_id,
                minutes_before=reminder.minutes_before,
                notified=reminder.notified,
                notified_at=reminder.notified_at,
                custom_message=reminder.custom_message,
            )
            if reminder.id:
                row.id = reminder.id
            session.add(row)
            session.flush()
            reminder.id = row.id
        return reminder

    def replace_reminders(
        self,
        event_id: int,
        minutes_before: Iterable[int],
        custom_message: Optional[str] = None,
    ) -> List[models.Reminder]:
        with self.session_scope() as session:
            session.execute(delete(ReminderRow).where(ReminderRow.event_id == event_id))
            rows = [
                ReminderRow(event_id=event_id, minutes_before=minutes, notified=False, custom_message=custom_message)
                for minutes in minutes_before
            ]
            session.add_all(rows)
            session.flush()
            return [_to_reminder(row) for row in rows]

    def add_friend(self, friend: models.Friend) -> models.Friend:
        with self.session_scope() as session:
            row = FriendRow(
                user_id=friend.user_id,
                name=friend.name,
                telegram_chat_id=friend.telegram_chat_id,
                telegram_username=friend.telegram_username,
                color=friend.color,
            )
            if friend.id:
                row.id = friend.id
            session.add(row)
            session.flush()
            friend.id = row.id
        return friend

    def set_event_friends(self, event_id: int, friend_ids: Iterable[int]) -> None:
        with self.session_scope() as session:
            session.execute(delete(EventFriendRow).where(EventFriendRow.event_id == event_id))
            session.add_all(
                EventFriendRow(event_id=event_id, friend_id=friend_id)
                for friend_id in dict.fromkeys(friend_ids)
            )

    def set_telegram_settings(self, settings: models.TelegramSettings) -> None:
        with self.session_scope() as session:
            row = session.scalar(
                select(TelegramSettingsRow).where(TelegramSettingsRow.user_id == settings.user_id)
            )
            if row is None:
                row = TelegramSettingsRow(user_id=settings.user_id)
                session.add(row)
            row.bot_token = settings.bot_token
            row.chat_id = settings.chat_id
            row.thread_id = settings.thread_id
            row.enabled = settings.enabled

    def delete_event(self, event_id: int) -> None:
        with self.session_scope() as session:
            session.execute(delete(ReminderRow).where(ReminderRow.event_id == event_id))
            session.execute(delete(EventFriendRow).where(EventFriendRow.event_id == event_id))
            session.execute(delete(EventRow).where(EventRow.id == event_id))

    def get_reminder(self, reminder_id: int) -> Optional[models.Reminder]:
        with self.session_scope() as session:
            row = session.get(ReminderRow, reminder_id)
            return _to_reminder(row) if row else None

    # ------------------------------------------------------------------
    # ReminderStore
    # ------------------------------------------------------------------
    def list_unnotified(self) -> List[models.PendingReminder]:
        stmt = (
            select(ReminderRow, EventRow)
            .join(EventRow, ReminderRow.event_id == EventRow.id)
            .where(ReminderRow.notified.is_(False))
            .order_by(ReminderRow.id)
        )
        with self.session_scope() as session:
            return [
                models.PendingReminder(_to_reminder(reminder), _to_event(event))
                for reminder, event in session.execute(stmt).all()
            ]

    def mark_reminder_notified(self, reminder_id: int, notified_at: datetime) -> None:
        stmt = (
            update(ReminderRow)
            .where(ReminderRow.id == reminder_id, ReminderRow.notified.is_(False))
            .values(notified=True, notified_at=notified_at)
        )
        with self.session_scope() as session:
            updated = session.execute(stmt).rowcount
        if updated == 0:
            self._logger.debug("Reminder %s already marked or missing", reminder_id)

    def get_event_friends(self, event_id: int) -> List[models.Friend]:
        stmt = (
            select(FriendRow)
            .join(EventFriendRow, EventFriendRow.friend_id == FriendRow.id)
            .where(EventFriendRow.event_id == event_id)
            .order_by(EventFriendRow.id)
        )
        with self.session_scope() as session:
            return [_to_friend(row) for row in session.scalars(stmt).all()]

    def get_user_by_id(self, user_id: int) -> Optional[models.User]:
        with self.session_scope() as session:
            row = session.get(UserRow, user_id)
            if row is None:
                return None
            return models.User(
                id=row.id,
                name=row.name,
                telegram_chat_id=row.telegram_chat_id,
                telegram_username=row.telegram_username,
            )

    def get_telegram_settings(self, user_id: int) -> Optional[models.TelegramSettings]:
        with self.session_scope() as session:
            row = session.scalar(select(TelegramSettingsRow).where(TelegramSettingsRow.user_id == user_id))
            if row is None:
                return None
            return models.TelegramSettings(
                user_id=row.user_id,
                bot_token=row.bot_token,
                chat_id=row.chat_id,
                thread_id=row.thread_id,
                enabled=row.enabled,
            )

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
    ) -> models.FriendRegistration:
        with self.session_scope() as session:
            existing = session.scalar(
                select(FriendRow.id)
                .where(FriendRow.user_id == user_id, FriendRow.telegram_chat_id == chat_id)
                .order_by(FriendRow.id)
                .limit(1)
            )
            if existing is not None:
                return models.FriendRegistration(existing, False)
            row = FriendRow(
                user_id=user_id,
                name=name,
                telegram_chat_id=chat_id,
                telegram_username=username,
                color=color,
            )
            session.add(row)
            session.flush()
            return models.FriendRegistration(row.id, True)

    def find_friend_by_chat_id(self, chat_id: str) -> Optional[models.Friend]:
        stmt = select(FriendRow).where(FriendRow.telegram_chat_id == chat_id).order_by(FriendRow.id).limit(1)
        with self.session_scope() as session:
            row = session.scalar(stmt)
            return _to_friend(row) if row else None


__all__ = [
    "Base",
    "UserRow",
    "EventRow",
    "ReminderRow",
    "FriendRow",
    "EventFriendRow",
    "TelegramSettingsRow",
    "SqlReminderStore",
]
