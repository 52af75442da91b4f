import asyncio
from datetime import datetime, timezone

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.schedulers.base import STATE_STOPPED

from event_reminder.calendar.models import Event, Friend, Reminder, User
from event_reminder.notify.dispatcher import NotificationDispatcher
from event_reminder.reminders.scheduler import CycleResult, ReminderScheduler
from event_reminder.storage.memory import InMemoryReminderStore
from event_reminder.util.timezone import LocalClock


class FakeSender:
    def __init__(self, failing=()):
        self.calls = []
        self._failing = set(failing)
        self.gate = None
        self.entered = asyncio.Event()

    async def send_message(self, owner_user_id, text, override_chat_id=None):
        target = override_chat_id or "owner"
        self.calls.append((target, text))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        return target not in self._failing


class MutableClock(LocalClock):
    """LocalClock whose UTC instant can be moved by the test."""

    def __init__(self, local_now: datetime):
        super().__init__(now_func=lambda: self.instant)
        self.set_local(local_now)

    def set_local(self, local_now: datetime) -> None:
        # マレーシア時間 (UTC+8) の壁時計を UTC に戻して保持
        self.instant = local_now.replace(tzinfo=self._tz).astimezone(timezone.utc)


def _seed(store, *, minutes_before=15, custom_message=None, friends=()):
    store.add_user(User(id=1, name="太郎"))
    store.add_event(
        Event(
            id=1,
            user_id=1,
            title="定例",
            start_time=datetime(2024, 12, 24, 14, 30),
            end_time=datetime(2024, 12, 24, 15, 0),
        )
    )
    store.add_reminder(Reminder(1, 1, minutes_before, custom_message=custom_message))
    for friend in friends:
        store.add_friend(friend)
    store.set_event_friends(1, [friend.id for friend in friends])


def _scheduler(store, sender, clock, **kwargs):
    return ReminderScheduler(store, NotificationDispatcher(store, sender), clock, **kwargs)


@pytest.mark.asyncio
async def test_reminder_fires_exactly_at_notify_time():
    store = InMemoryReminderStore()
    _seed(store)
    sender = FakeSender()
    clock = MutableClock(datetime(2024, 12, 24, 14, 14, 59))
    scheduler = _scheduler(store, sender, clock)

    assert await scheduler.run_once() == CycleResult(0, 0)
    assert sender.calls == []

    clock.set_local(datetime(2024, 12, 24, 14, 15, 0))
    assert await scheduler.run_once() == CycleResult(1, 1)
    reminder = store.get_reminder(1)
    assert reminder.notified
    assert reminder.notified_at == datetime(2024, 12, 24, 14, 15, 0)


@pytest.mark.asyncio
async def test_second_run_has_nothing_left():
    store = InMemoryReminderStore()
    _seed(store, custom_message="bring slides")
    sender = FakeSender()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)))

    assert await scheduler.run_once() == CycleResult(1, 1)
    assert "bring slides" in sender.calls[0][1]
    assert await scheduler.run_once() == CycleResult(0, 0)
    assert store.list_unnotified() == []


@pytest.mark.asyncio
async def test_failed_delivery_is_still_marked():
    store = InMemoryReminderStore()
    _seed(store, friends=[Friend(id=5, user_id=1, name="花子", telegram_chat_id="555")])
    sender = FakeSender(failing={"owner"})
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)))

    assert await scheduler.run_once() == CycleResult(1, 0)
    assert store.get_reminder(1).notified
    assert [target for target, _ in sender.calls] == ["owner", "555"]
    assert await scheduler.run_once() == CycleResult(0, 0)


class ExplodingDispatcher:
    def __init__(self):
        self.calls = 0

    async def dispatch(self, event, reminder, message):
        self.calls += 1
        raise RuntimeError("boom")


@pytest.mark.asyncio
async def test_dispatch_crash_does_not_stop_the_cycle():
    store = InMemoryReminderStore()
    _seed(store)
    store.add_reminder(Reminder(2, 1, 30))
    dispatcher = ExplodingDispatcher()
    scheduler = ReminderScheduler(store, dispatcher, MutableClock(datetime(2024, 12, 24, 14, 20)))

    assert await scheduler.run_once() == CycleResult(2, 0)
    assert dispatcher.calls == 2
    assert store.list_unnotified() == []


class FlakyMarkStore(InMemoryReminderStore):
    def __init__(self):
        super().__init__()
        self.fail_marks = 1

    def mark_reminder_notified(self, reminder_id, notified_at):
        if self.fail_marks:
            self.fail_marks -= 1
            raise ConnectionError("db gone")
        super().mark_reminder_notified(reminder_id, notified_at)


@pytest.mark.asyncio
async def test_mark_failure_means_the_reminder_is_retried():
    store = FlakyMarkStore()
    _seed(store)
    sender = FakeSender()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)))

    assert await scheduler.run_once() == CycleResult(1, 1)
    assert not store.get_reminder(1).notified
    assert await scheduler.run_once() == CycleResult(1, 1)
    assert store.get_reminder(1).notified
    assert len(sender.calls) == 2


class UnreachableStore(InMemoryReminderStore):
    def list_unnotified(self):
        raise ConnectionError("db unreachable")


@pytest.mark.asyncio
async def test_query_failure_counts_as_empty_cycle():
    sender = FakeSender()
    scheduler = _scheduler(UnreachableStore(), sender, MutableClock(datetime(2024, 12, 24, 14, 20)))
    assert await scheduler.run_once() == CycleResult(0, 0)
    assert sender.calls == []


@pytest.mark.asyncio
async def test_overlapping_runs_are_serialized():
    store = InMemoryReminderStore()
    _seed(store)
    sender = FakeSender()
    sender.gate = asyncio.Event()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)))

    first = asyncio.create_task(scheduler.run_once())
    await asyncio.wait_for(sender.entered.wait(), timeout=2)
    second = asyncio.create_task(scheduler.run_once())
    await asyncio.sleep(0.05)
    assert not second.done()

    sender.gate.set()
    assert await first == CycleResult(1, 1)
    assert await second == CycleResult(0, 0)
    assert len(sender.calls) == 1


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_is_idempotent():
    store = InMemoryReminderStore()
    _seed(store)
    sender = FakeSender()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)), interval_sec=3600)

    await scheduler.stop()
    scheduler.start()
    scheduler.start()
    assert scheduler.running

    await asyncio.wait_for(sender.entered.wait(), timeout=5)
    for _ in range(100):
        if store.get_reminder(1).notified:
            break
        await asyncio.sleep(0.02)
    assert store.get_reminder(1).notified
    assert len(sender.calls) == 1

    await scheduler.stop()
    await scheduler.stop()
    assert not scheduler.running


@pytest.mark.asyncio
async def test_stop_lets_the_inflight_cycle_finish():
    store = InMemoryReminderStore()
    _seed(store)
    sender = FakeSender()
    sender.gate = asyncio.Event()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)), interval_sec=3600)

    scheduler.start()
    await asyncio.wait_for(sender.entered.wait(), timeout=5)
    stopping = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert not store.get_reminder(1).notified

    sender.gate.set()
    await asyncio.wait_for(stopping, timeout=5)
    assert store.get_reminder(1).notified


@pytest.mark.asyncio
async def test_independent_instances_do_not_share_state():
    first_store, second_store = InMemoryReminderStore(), InMemoryReminderStore()
    _seed(first_store)
    _seed(second_store)
    clock = MutableClock(datetime(2024, 12, 24, 14, 20))
    first = _scheduler(first_store, FakeSender(), clock, interval_sec=3600)
    second = _scheduler(second_store, FakeSender(), clock, interval_sec=3600)

    first.start()
    assert first.running and not second.running
    await first.stop()
    assert await second.run_once() == CycleResult(1, 1)


@pytest.mark.asyncio
async def test_stop_waits_until_the_timer_reports_stopped(monkeypatch):
    deferred_shutdown = AsyncIOScheduler.shutdown

    def slower_shutdown(self, *args, **kwargs):
        loop = asyncio.get_running_loop()
        loop.call_soon(loop.call_soon, lambda: deferred_shutdown(self, *args, **kwargs))

    monkeypatch.setattr(AsyncIOScheduler, "shutdown", slower_shutdown)
    store = InMemoryReminderStore()
    _seed(store)
    sender = FakeSender()
    scheduler = _scheduler(store, sender, MutableClock(datetime(2024, 12, 24, 14, 20)), interval_sec=3600)

    scheduler.start()
    timer = scheduler._scheduler
    await asyncio.wait_for(sender.entered.wait(), timeout=5)
    await scheduler.stop()

    assert timer.state == STATE_STOPPED
    assert store.get_reminder(1).notified
