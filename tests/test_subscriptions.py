import asyncio

import pytest
from bson import ObjectId

from chatsync.config import Settings
from chatsync.services.container import build_services
from chatsync.services.subscriptions import SubscriptionManager
from chatsync.utils.clock import now_ms
from chatsync.utils.errors import InvalidArgumentError


class Inbox:
    def __init__(self) -> None:
        self.frames = []

    async def __call__(self, frame: dict) -> None:
        self.frames.append(frame)

    @property
    def results(self):
        return [f["value"] for f in self.frames if f["type"] == "result"]


@pytest.fixture
def manager(services, bus):
    subscriptions = SubscriptionManager(lambda: services)
    bus.add_listener(subscriptions.handle_change)
    return subscriptions


async def test_initial_result_is_pushed(manager, pair):
    _, _, conversation_id = pair
    inbox = Inbox()

    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, inbox)

    assert inbox.frames == [{"type": "result", "id": "s1", "value": []}]


async def test_message_list_follows_sends_and_deletes(manager, services, pair):
    alice, _, conversation_id = pair
    inbox = Inbox()
    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, inbox)

    message_id = await services.chat.send_message(conversation_id, alice, "hello")
    await manager.wait_idle()
    await services.chat.delete_message(message_id)
    await manager.wait_idle()

    assert len(inbox.results) == 3
    assert inbox.results[1][0]["content"] == "hello"
    assert inbox.results[2][0]["is_deleted"] is True
    assert inbox.results[2][0]["content"] != "hello"


async def test_unrelated_writes_do_not_push(manager, services, pair, make_user):
    alice, bob, conversation_id = pair
    inbox = Inbox()
    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, inbox)

    await services.typing.set_typing(conversation_id, alice)
    await services.chat.mark_read(conversation_id, bob)
    # touches the users topic but leaves every sender profile as it was
    await make_user("carol")
    await manager.wait_idle()

    assert len(inbox.frames) == 1


async def test_unread_count_is_live(manager, services, pair, clock):
    alice, bob, conversation_id = pair
    inbox = Inbox()
    await manager.subscribe(
        "conn", "s1", "receipts.unread", {"conversation_id": conversation_id, "user_id": bob}, inbox
    )

    clock.set(1000)
    await services.chat.send_message(conversation_id, alice, "hi")
    await manager.wait_idle()
    clock.set(1500)
    await services.chat.mark_read(conversation_id, bob)
    await manager.wait_idle()
    clock.set(2000)
    await services.chat.send_message(conversation_id, alice, "there")
    await manager.wait_idle()

    assert inbox.results == [0, 1, 0, 1]


async def test_conversation_list_sees_new_conversation_and_presence(manager, services, make_user):
    alice = await make_user("alice")
    bob = await make_user("bob")
    inbox = Inbox()
    await manager.subscribe("conn", "s1", "conversations.list", {"user_id": alice}, inbox)

    await services.chat.get_or_create_conversation(bob, alice)
    await manager.wait_idle()
    await services.users.set_online_status("bob", False)
    await manager.wait_idle()

    assert inbox.results[0] == []
    assert inbox.results[1][0]["other_user"]["is_online"] is True
    assert inbox.results[2][0]["other_user"]["is_online"] is False


async def test_unsubscribe_stops_pushes(manager, services, pair):
    alice, _, conversation_id = pair
    inbox = Inbox()
    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, inbox)

    manager.unsubscribe("conn", "s1")
    await services.chat.send_message(conversation_id, alice, "anyone?")
    await manager.wait_idle()

    assert len(inbox.frames) == 1
    assert len(manager) == 0


async def test_drop_connection_removes_all_its_subscriptions(manager, pair):
    _, bob, conversation_id = pair
    await manager.subscribe("conn", "a", "messages.list", {"conversation_id": conversation_id}, Inbox())
    await manager.subscribe("conn", "b", "conversations.list", {"user_id": bob}, Inbox())
    await manager.subscribe("other", "a", "conversations.list", {"user_id": bob}, Inbox())

    manager.drop_connection("conn")

    assert len(manager) == 1


async def test_failed_push_drops_subscription(manager, services, pair):
    alice, _, conversation_id = pair

    async def broken(frame):
        raise ConnectionError("socket gone")

    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, broken)

    assert len(manager) == 0
    # later writes must not fail because of the dead subscriber
    await services.chat.send_message(conversation_id, alice, "still works")


async def test_query_errors_are_pushed_as_frames(manager):
    inbox = Inbox()

    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": str(ObjectId())}, inbox)

    assert inbox.frames[0]["type"] == "error"
    assert inbox.frames[0]["code"] == "not_found"


async def test_unknown_query_and_missing_args_are_rejected(manager):
    with pytest.raises(InvalidArgumentError):
        await manager.subscribe("conn", "s1", "messages.search", {}, Inbox())
    with pytest.raises(InvalidArgumentError):
        await manager.subscribe("conn", "s1", "typing.list", {"conversation_id": "x"}, Inbox())
    assert len(manager) == 0


async def test_typing_subscription_pushes_expiry(db, bus, make_user):
    live = build_services(db, bus, now_ms, Settings(typing_window_ms=50))
    subscriptions = SubscriptionManager(lambda: live)
    bus.add_listener(subscriptions.handle_change)
    alice = await make_user("alice")
    bob = await make_user("bob")
    conversation_id, _ = await live.chat.get_or_create_conversation(alice, bob)
    inbox = Inbox()
    await subscriptions.subscribe(
        "conn", "s1", "typing.list", {"conversation_id": conversation_id, "user_id": bob}, inbox
    )

    await live.typing.set_typing(conversation_id, alice)
    await subscriptions.wait_idle()
    assert [u["external_id"] for u in inbox.results[-1]] == ["alice"]

    await asyncio.sleep(0.3)

    assert inbox.results[-1] == []
    assert inbox.results == [[], inbox.results[1], []]


async def test_typing_expiry_follows_oldest_indicator(db, bus, make_user):
    live = build_services(db, bus, now_ms, Settings(typing_window_ms=200))
    subscriptions = SubscriptionManager(lambda: live)
    bus.add_listener(subscriptions.handle_change)
    alice = await make_user("alice")
    bob = await make_user("bob")
    conversation_id, _ = await live.chat.get_or_create_conversation(alice, bob)
    inbox = Inbox()
    await subscriptions.subscribe(
        "conn", "s1", "typing.list", {"conversation_id": conversation_id, "user_id": bob}, inbox
    )

    await live.typing.set_typing(conversation_id, alice)
    await asyncio.sleep(0.15)
    # re-evaluates mid-window without touching alice's indicator
    await make_user("carol")
    await subscriptions.wait_idle()
    assert [u["external_id"] for u in inbox.results[-1]] == ["alice"]

    await asyncio.sleep(0.15)

    assert inbox.results[-1] == []


async def test_stalled_subscriber_does_not_block_writers(manager, services, pair):
    alice, _, conversation_id = pair
    release = asyncio.Event()
    frames = []

    async def stalled(frame):
        frames.append(frame)
        if len(frames) > 1:
            await release.wait()

    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, stalled)

    await asyncio.wait_for(services.chat.send_message(conversation_id, alice, "one"), timeout=1)
    await asyncio.wait_for(services.chat.send_message(conversation_id, alice, "two"), timeout=1)

    release.set()
    await manager.wait_idle()
    assert [m["content"] for m in frames[-1]["value"]] == ["one", "two"]


async def test_close_cancels_pending_runs(manager, services, pair):
    alice, _, conversation_id = pair
    frames = []

    async def hanging(frame):
        frames.append(frame)
        if len(frames) > 1:
            await asyncio.Event().wait()

    await manager.subscribe("conn", "s1", "messages.list", {"conversation_id": conversation_id}, hanging)
    await services.chat.send_message(conversation_id, alice, "hello")
    await asyncio.sleep(0)

    await asyncio.wait_for(manager.close(), timeout=1)

    assert len(manager) == 0
    await manager.wait_idle()
