import asyncio

import pytest
from bson import ObjectId

from chatsync.repositories.conversation_repository import ConversationRepository, pair_key
from chatsync.utils.errors import InvalidArgumentError, NotFoundError


class StaleReadCollection:
    """Pretends the first ``stale_reads`` lookups ran before a concurrent insert."""

    def __init__(self, inner, stale_reads: int = 1) -> None:
        self._inner = inner
        self.stale_reads = stale_reads

    async def find_one(self, *args, **kwargs):
        if self.stale_reads:
            self.stale_reads -= 1
            return None
        return await self._inner.find_one(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._inner, name)


class RacyConversationRepository(ConversationRepository):
    def __init__(self, db) -> None:
        super().__init__(db)
        self._racy = StaleReadCollection(db["conversations"])

    @property
    def collection(self):
        return self._racy


def test_pair_key_is_order_independent():
    assert pair_key("b", "a") == pair_key("a", "b") == "a:b"


async def test_get_or_create_is_symmetric(services, make_user):
    alice = await make_user("alice")
    bob = await make_user("bob")

    first, created = await services.chat.get_or_create_conversation(alice, bob)
    second, created_again = await services.chat.get_or_create_conversation(bob, alice)

    assert first == second
    assert created is True
    assert created_again is False


async def test_concurrent_get_or_create_yields_one_conversation(services, make_user, db):
    alice = await make_user("alice")
    bob = await make_user("bob")

    calls = [
        services.chat.get_or_create_conversation(*((alice, bob) if i % 2 else (bob, alice)))
        for i in range(20)
    ]
    results = await asyncio.gather(*calls)

    assert len({conversation_id for conversation_id, _ in results}) == 1
    assert sum(created for _, created in results) == 1
    assert await db["conversations"].count_documents({}) == 1


async def test_lost_insert_race_returns_winner(db, make_user, clock):
    alice = await make_user("alice")
    bob = await make_user("bob")
    winner, _ = await ConversationRepository(db).get_or_create_one_to_one(alice, bob, clock())

    racy = RacyConversationRepository(db)
    convo, created = await racy.get_or_create_one_to_one(bob, alice, clock())

    assert created is False
    assert convo["_id"] == winner["_id"]
    assert await db["conversations"].count_documents({}) == 1


async def test_conversation_with_self_is_rejected(services, make_user):
    alice = await make_user("alice")

    with pytest.raises(InvalidArgumentError):
        await services.chat.get_or_create_conversation(alice, alice)


async def test_conversation_with_unknown_user_is_not_found(services, make_user, db):
    alice = await make_user("alice")

    with pytest.raises(NotFoundError):
        await services.chat.get_or_create_conversation(alice, str(ObjectId()))
    assert await db["conversations"].count_documents({}) == 0


async def test_malformed_user_id_is_invalid(services, make_user):
    alice = await make_user("alice")

    with pytest.raises(InvalidArgumentError):
        await services.chat.get_or_create_conversation(alice, "not-an-id")


async def test_new_conversation_has_no_activity(services, pair):
    _, _, conversation_id = pair

    convo = await services.chat.get_conversation(conversation_id)

    assert convo["last_message_at"] is None
    assert convo["message_seq"] == 0


async def test_list_conversations_sorted_by_last_activity(services, make_user, clock):
    me = await make_user("me")
    bob = await make_user("bob")
    carol = await make_user("carol")
    dave = await make_user("dave")
    with_bob, _ = await services.chat.get_or_create_conversation(me, bob)
    with_carol, _ = await services.chat.get_or_create_conversation(me, carol)
    quiet, _ = await services.chat.get_or_create_conversation(dave, me)

    clock.set(1000)
    await services.chat.send_message(with_bob, bob, "older")
    clock.set(3000)
    await services.chat.send_message(with_carol, me, "newer")

    items = await services.chat.list_conversations(me)

    assert [i["conversation"]["_id"] for i in items] == [with_carol, with_bob, quiet]
    assert [i["other_user"]["external_id"] for i in items] == ["carol", "bob", "dave"]
    assert items[0]["last_message"]["content"] == "newer"
    assert items[1]["last_message"]["content"] == "older"
    assert items[2]["last_message"] is None


async def test_list_conversations_only_includes_participant(services, make_user):
    alice = await make_user("alice")
    bob = await make_user("bob")
    carol = await make_user("carol")
    await services.chat.get_or_create_conversation(alice, bob)

    assert await services.chat.list_conversations(carol) == []


async def test_conversation_projection_scenario(services, pair, clock):
    alice, bob, conversation_id = pair

    clock.set(1000)
    await services.chat.send_message(conversation_id, alice, "hi")

    views = await services.projections.conversation_list(alice)
    assert len(views) == 1
    assert views[0].last_message.content == "hi"
    assert views[0].last_message_at == 1000
    assert views[0].other_user.external_id == "bob"
    assert views[0].other_user.is_online is True
    assert views[0].unread_count == 0

    bob_views = await services.projections.conversation_list(bob)
    assert bob_views[0].unread_count == 1
