"""Periodic scan-dispatch-mark loop for event reminders."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_STOPPED

from event_reminder.calendar.models import Reminder
from event_reminder.notify.composer import compose
from event_reminder.notify.dispatcher import NotificationDispatcher
from event_reminder.reminders.pending import get_pending_reminders
from event_reminder.storage.base import ReminderStore
from event_reminder.util.logging_utils import get_logger
from event_reminder.util.timezone import LocalClock

_JOB_ID = "reminder-scan"
_SHUTDOWN_POLLS = 100


@dataclass
class CycleResult:
    processed: int = 0
    sent: int = 0


class ReminderScheduler:
    """Runs one cycle immediately on ``start()`` and then every ``interval_sec``.

    Cycles never overlap: interval ticks that fire while a cycle is still
    running are skipped by apscheduler (``max_instances=1``) and manual
    ``run_once()`` calls wait on the cycle lock. Every reminder handed to
    dispatch is marked notified afterwards, whether or not delivery worked.
    """

    def __init__(
        self,
        store: ReminderStore,
        dispatcher: NotificationDispatcher,
        clock: LocalClock,
        *,
        interval_sec: int = 60,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock
        self._interval_sec = interval_sec
        self._logger = get_logger(__name__)
        self._cycle_lock = asyncio.Lock()
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: Optional[asyncio.Task[CycleResult]] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        """Schedule the scan job. Must be called with a running event loop."""

        if self._scheduler is not None:
            self._logger.info("Reminder job already running")
            return
        scheduler = AsyncIOScheduler(timezone=self._clock.tz_name)
        scheduler.add_job(
            self._tick,
            "interval",
            seconds=self._interval_sec,
            id=_JOB_ID,
            next_run_time=datetime.now(scheduler.timezone),
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        self._logger.info("Starting reminder job (checking every %d sec)", self._interval_sec)

    async def stop(self) -> None:
        """Cancel the timer and wait for an in-flight cycle to finish."""

        if self._scheduler is None:
            return
        scheduler, self._scheduler = self._scheduler, None
        scheduler.shutdown(wait=False)
        # AsyncIOScheduler.shutdown() is deferred through call_soon_threadsafe
        for _ in range(_SHUTDOWN_POLLS):
            if scheduler.state == STATE_STOPPED:
                break
            await asyncio.sleep(0)
        else:
            self._logger.warning("Reminder timer did not report stopped after shutdown")
        inflight = self._inflight
        if inflight and not inflight.done():
            self._logger.info("Waiting for the running reminder cycle to finish")
            await asyncio.wait({inflight})
        self._logger.info("Stopped reminder job")

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    async def run_once(self) -> CycleResult:
        """Scan, dispatch and mark exactly once."""

        async with self._cycle_lock:
            return await self._run_cycle()

    async def _tick(self) -> None:
        # shield so a scheduler shutdown can't abort a half-marked cycle
        task = asyncio.ensure_future(self.run_once())
        self._inflight = task
        try:
            result = await asyncio.shield(task)
        except Exception:
            self._logger.exception("Reminder cycle crashed")
            return
        if result.processed:
            self._logger.info(
                "Processed %d reminders, sent %d notifications", result.processed, result.sent
            )

    async def _run_cycle(self) -> CycleResult:
        result = CycleResult()
        now = self._clock.now()
        try:
            due = await asyncio.to_thread(get_pending_reminders, self._store, now)
        except Exception:
            self._logger.exception("Error fetching pending reminders")
            return result

        if due:
            self._logger.info("%d reminder(s) ready for notification", len(due))

        for reminder, event in due:
            result.processed += 1
            try:
                message = compose(event, reminder)
                outcome = await self._dispatcher.dispatch(event, reminder, message)
            except Exception:
                self._logger.exception("Error dispatching reminder %s (event %s)", reminder.id, event.id)
            else:
                if outcome.sent:
                    result.sent += 1
                    self._logger.info("Sent notification for event %s to user %s", event.id, event.user_id)
                else:
                    self._logger.info(
                        "Failed to send notification for event %s (Telegram not configured or error)",
                        event.id,
                    )
            await self._mark_notified(reminder)
        return result

    async def _mark_notified(self, reminder: Reminder) -> None:
        try:
            await asyncio.to_thread(self._store.mark_reminder_notified, reminder.id, self._clock.now())
        except Exception:
            # the reminder stays pending and is retried next cycle
            self._logger.exception("Failed to mark reminder %s notified", reminder.id)


__all__ = ["CycleResult", "ReminderScheduler"]
