"""Entry point for the Telegram reminder worker."""
from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
from pathlib import Path

from event_reminder.config.loader import AppConfig, load_config
from event_reminder.notify.dispatcher import NotificationDispatcher
from event_reminder.notify.telegram_client import TelegramBotClient
from event_reminder.reminders.scheduler import ReminderScheduler
from event_reminder.storage.base import ReminderStore
from event_reminder.storage.factory import build_store, close_store
from event_reminder.util.logging_utils import configure_logging, get_logger
from event_reminder.util.timezone import LocalClock


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="event-reminder")
    parser.add_argument("--config", default="config/dev.yaml", help="Path to env config yaml")
    parser.add_argument("--once", action="store_true", help="Run a single scan cycle and exit")
    parser.add_argument(
        "--test-telegram",
        type=int,
        metavar="USER_ID",
        help="Send the Telegram test message with USER_ID's saved settings and exit",
    )
    return parser.parse_args(argv)


def _resolve_config(args: argparse.Namespace) -> AppConfig:
    config_path = Path(args.config)
    env_name = config_path.stem
    return load_config(app_env=env_name, config_dir=config_path.parent)


def build_scheduler(config: AppConfig, store: ReminderStore, sender: TelegramBotClient) -> ReminderScheduler:
    dispatcher = NotificationDispatcher(
        store,
        sender,
        friend_concurrency=config.reminders.friend_concurrency,
    )
    return ReminderScheduler(
        store,
        dispatcher,
        LocalClock(config.calendar.timezone),
        interval_sec=config.reminders.interval_sec,
    )


async def _send_test(store: ReminderStore, sender: TelegramBotClient, user_id: int) -> bool:
    logger = get_logger(__name__)
    settings = await asyncio.to_thread(store.get_telegram_settings, user_id)
    if settings is None:
        logger.error("No Telegram settings saved for user %s", user_id)
        return False
    ok = await sender.send_test_message(settings)
    logger.info("Telegram test message for user %s: %s", user_id, "sent" if ok else "failed")
    return ok


async def _wait_for_shutdown() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # add_signal_handler is unavailable on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)
    await stop_event.wait()


async def _run(config: AppConfig, args: argparse.Namespace) -> int:
    logger = get_logger(__name__)
    store = build_store(config)
    try:
        async with TelegramBotClient(store, config) as sender:
            if args.test_telegram is not None:
                return 0 if await _send_test(store, sender, args.test_telegram) else 1

            scheduler = build_scheduler(config, store, sender)
            if args.once:
                result = await scheduler.run_once()
                logger.info("Processed %d reminders, sent %d notifications", result.processed, result.sent)
                return 0

            scheduler.start()
            try:
                await _wait_for_shutdown()
            finally:
                await scheduler.stop()
        return 0
    finally:
        close_store(store)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    config = _resolve_config(args)
    log_level = config.logging.level if config.logging else "INFO"
    configure_logging(log_level)
    get_logger(__name__).info("Loaded config for mode %s (timezone %s)", config.mode, config.calendar.timezone)
    try:
        return asyncio.run(_run(config, args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
