import pytest
from mongomock_motor import AsyncMongoMockClient

from chatsync.config import Settings
from chatsync.services.container import build_services, ensure_indexes
from chatsync.utils.realtime_bus import LocalBus
from tests.fakes import FakeClock


@pytest.fixture
def clock():
    return FakeClock(start_ms=0)


@pytest.fixture
def settings():
    return Settings(typing_window_ms=2000, send_retry_attempts=5)


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["chatsync_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def services(db, bus, clock, settings):
    return build_services(db, bus, clock, settings)


@pytest.fixture
def make_user(services):
    async def _make(external_id: str, name: str | None = None) -> str:
        name = name or external_id.capitalize()
        return await services.users.upsert_profile(external_id, name, f"{external_id}@example.com")

    return _make


@pytest.fixture
async def pair(services, make_user):
    """Two users and their conversation: (alice_id, bob_id, conversation_id)."""
    alice = await make_user("alice")
    bob = await make_user("bob")
    conversation_id, _ = await services.chat.get_or_create_conversation(alice, bob)
    return alice, bob, conversation_id
