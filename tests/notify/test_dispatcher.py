from datetime import datetime

import pytest

from event_reminder.calendar.models import Event, Friend, Reminder, User
from event_reminder.notify.dispatcher import NotificationDispatcher
from event_reminder.storage.memory import InMemoryReminderStore


class RecordingSender:
    """Fake delivery collaborator; chat ids in ``failing`` return False, in ``raising`` raise."""

    def __init__(self, failing=(), raising=()):
        self.calls = []
        self._failing = set(failing)
        self._raising = set(raising)

    async def send_message(self, owner_user_id, text, override_chat_id=None):
        target = override_chat_id or "owner"
        self.calls.append((owner_user_id, target, text))
        if target in self._raising:
            raise ConnectionError("network down")
        return target not in self._failing


def _seed(store, *, notify_self=False, username="taro"):
    store.add_user(User(id=1, name="太郎", telegram_username=username))
    event = Event(
        id=10,
        user_id=1,
        title="会議",
        start_time=datetime(2024, 12, 24, 14, 30),
        end_time=datetime(2024, 12, 24, 15, 30),
        notify_self=notify_self,
    )
    store.add_event(event)
    return event


@pytest.mark.asyncio
async def test_friend_failure_does_not_affect_others():
    store = InMemoryReminderStore()
    event = _seed(store)
    store.add_friend(Friend(id=1, user_id=1, name="花子", telegram_chat_id="111"))
    store.add_friend(Friend(id=2, user_id=1, name="次郎", telegram_chat_id="222"))
    store.set_event_friends(event.id, [1, 2])
    sender = RecordingSender(failing={"111"})

    result = await NotificationDispatcher(store, sender).dispatch(event, Reminder(1, 10, 15), "msg")

    assert result.attempted_owner and result.owner_sent
    assert result.friends_attempted == 2
    assert result.friends_sent == 1
    assert result.failed_friends == [1]
    assert {call[1] for call in sender.calls} == {"owner", "111", "222"}


@pytest.mark.asyncio
async def test_owner_failure_still_reaches_friends():
    store = InMemoryReminderStore()
    event = _seed(store)
    store.add_friend(Friend(id=1, user_id=1, name="花子", telegram_chat_id="111"))
    store.set_event_friends(event.id, [1])
    sender = RecordingSender(raising={"owner"})

    result = await NotificationDispatcher(store, sender, friend_concurrency=False).dispatch(
        event, Reminder(1, 10, 15), "msg"
    )

    assert result.attempted_owner
    assert not result.owner_sent
    assert not result.sent
    assert result.friends_sent == 1


@pytest.mark.asyncio
async def test_mention_only_goes_to_owner_and_friends_use_owner_bot():
    store = InMemoryReminderStore()
    event = _seed(store, notify_self=True, username="taro")
    store.add_friend(Friend(id=1, user_id=1, name="花子", telegram_chat_id="111"))
    store.set_event_friends(event.id, [1])
    sender = RecordingSender()

    await NotificationDispatcher(store, sender).dispatch(event, Reminder(1, 10, 15), "msg")

    owner_call, friend_call = sender.calls
    assert owner_call == (1, "owner", "@taro\n\nmsg")
    assert friend_call == (1, "111", "msg")


@pytest.mark.asyncio
async def test_friends_without_chat_id_are_skipped():
    store = InMemoryReminderStore()
    event = _seed(store)
    store.add_friend(Friend(id=1, user_id=1, name="未登録"))
    store.set_event_friends(event.id, [1])
    sender = RecordingSender()

    result = await NotificationDispatcher(store, sender).dispatch(event, Reminder(1, 10, 15), "msg")

    assert result.friends_attempted == 0
    assert [call[1] for call in sender.calls] == ["owner"]


class BrokenFriendStore(InMemoryReminderStore):
    def get_event_friends(self, event_id):
        raise RuntimeError("join failed")

    def get_user_by_id(self, user_id):
        raise RuntimeError("users table locked")


@pytest.mark.asyncio
async def test_lookup_failures_do_not_block_owner_delivery():
    store = BrokenFriendStore()
    event = _seed(store, notify_self=True)
    sender = RecordingSender()

    result = await NotificationDispatcher(store, sender).dispatch(event, Reminder(1, 10, 15), "msg")

    assert result.owner_sent
    assert result.friends_attempted == 0
    # メンション付与に失敗しても素のメッセージで送る
    assert sender.calls == [(1, "owner", "msg")]
