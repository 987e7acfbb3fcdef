import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional

import redis.asyncio as redis

from chatsync.config import get_settings


logger = logging.getLogger(__name__)

CHANGES_CHANNEL = "chatsync:changes"


def users_topic() -> str:
    return "users"


def user_conversations_topic(user_id: str) -> str:
    return f"user-conversations:{user_id}"


def messages_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


def receipts_topic(conversation_id: str, user_id: str) -> str:
    return f"conversation:{conversation_id}:receipts:{user_id}"


def typing_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:typing"


@dataclass(frozen=True)
class ChangeEvent:
    """Emitted after a committed write; ``topics`` name what the write touched."""

    kind: str
    topics: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def of(cls, kind: str, topics: Iterable[str]) -> "ChangeEvent":
        return cls(kind=kind, topics=frozenset(topics))

    def to_json(self) -> str:
        return json.dumps({"kind": self.kind, "topics": sorted(self.topics)})

    @classmethod
    def from_json(cls, raw: str) -> "ChangeEvent":
        data = json.loads(raw)
        return cls.of(data["kind"], data.get("topics", []))


ChangeListener = Callable[[ChangeEvent], Awaitable[None]]


class LocalBus:
    """Delivers change events to listeners of this process only."""

    enabled = False

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: ChangeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def publish(self, event: ChangeEvent) -> None:
        await self._dispatch(event)

    async def _dispatch(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception:
                logger.exception("Change listener failed for %s", event.kind)

    async def start(self) -> None:
        return

    async def stop(self) -> None:
        return


class RedisBus(LocalBus):
    """Fans change events out to every process through a Redis channel."""

    enabled = True

    def __init__(self, url: str, channel: str = CHANGES_CHANNEL) -> None:
        super().__init__()
        self._redis = redis.from_url(url)
        self._channel = channel
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

    async def publish(self, event: ChangeEvent) -> None:
        # our own listener task receives this too, so no local dispatch here
        await self._redis.publish(self._channel, event.to_json())

    async def start(self) -> None:
        if self._task is not None:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._channel)
        self._task = asyncio.create_task(self._listen())

    async def _listen(self) -> None:
        while True:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Redis change channel read failed")
                await asyncio.sleep(0.5)
                continue
            if not msg or msg.get("type") != "message":
                continue
            data = msg.get("data")
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            try:
                event = ChangeEvent.from_json(data)
            except (ValueError, KeyError):
                logger.warning("Dropping malformed change event: %r", data)
                continue
            await self._dispatch(event)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()


_bus: Optional[LocalBus] = None


async def get_bus() -> LocalBus:
    global _bus
    if _bus is not None:
        return _bus
    url = get_settings().redis_url
    _bus = RedisBus(url) if url else LocalBus()
    logger.info("Using %s for change notifications", type(_bus).__name__)
    return _bus


def set_bus(bus: Optional[LocalBus]) -> None:
    global _bus
    _bus = bus
