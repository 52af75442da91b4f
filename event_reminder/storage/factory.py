"""Chooses the store implementation from configuration."""
from __future__ import annotations

from event_reminder.config.loader import AppConfig
from event_reminder.storage.base import ReminderStore
from event_reminder.storage.memory import InMemoryReminderStore
from event_reminder.storage.sql import SqlReminderStore
from event_reminder.util.logging_utils import get_logger


def build_store(config: AppConfig) -> ReminderStore:
    logger = get_logger(__name__)
    url = config.database.url
    if not url:
        logger.info("Database URL not provided. Using in-memory store")
        return InMemoryReminderStore()
    store = SqlReminderStore(url, echo=config.database.echo)
    store.create_all()
    logger.info("SQL store initialized (%s)", url.split("://", 1)[0])
    return store


def close_store(store: ReminderStore) -> None:
    """Release database connections held by ``store``, if any."""

    if isinstance(store, SqlReminderStore):
        store.dispose()


__all__ = ["build_store", "close_store"]
