"""Live queries over the chat core.

A subscription is a named query plus its arguments. After every evaluation
it declares the change topics it depends on; when a committed write
publishes an event touching one of those topics the query is re-run from
current state and the result pushed to the subscriber, but only if it
differs from the last push. Runs of a single subscription never overlap,
so an older result can not overwrite a newer one.

Writers only mark the affected subscriptions and schedule their runs; a
slow subscriber delays its own pushes, never the write that caused them.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple

from chatsync.schemas.user import UserPublic
from chatsync.services.container import Services
from chatsync.utils.errors import ChatError, InvalidArgumentError
from chatsync.utils.realtime_bus import (
    ChangeEvent,
    messages_topic,
    receipts_topic,
    typing_topic,
    user_conversations_topic,
    users_topic,
)


logger = logging.getLogger(__name__)

Sender = Callable[[dict], Awaitable[None]]
SubscriptionKey = Tuple[str, str]


def _dump(models) -> list:
    return [m.model_dump(mode="json") for m in models]


async def _users_others(services: Services, args: dict) -> list:
    return _dump(await services.projections.other_users(args["external_id"], args.get("search")))


async def _users_me(services: Services, args: dict) -> Optional[dict]:
    doc = await services.users.get_by_external_id(args["external_id"])
    if doc is None:
        return None
    return UserPublic.from_doc(doc).model_dump(mode="json")


async def _conversations_list(services: Services, args: dict) -> list:
    return _dump(await services.projections.conversation_list(args["user_id"]))


async def _messages_list(services: Services, args: dict) -> list:
    return _dump(await services.projections.message_list(args["conversation_id"]))


async def _unread(services: Services, args: dict) -> int:
    return await services.chat.unread_count(args["conversation_id"], args["user_id"])


async def _typing_list(services: Services, args: dict) -> list:
    return _dump(await services.projections.typing_users(args["conversation_id"], args["user_id"]))


async def _never(services: Services, args: dict) -> Optional[int]:
    return None


async def _typing_expiry(services: Services, args: dict) -> Optional[int]:
    return await services.typing.expires_in(args["conversation_id"], args["user_id"])


@dataclass(frozen=True)
class LiveQuery:

    evaluate: Callable[[Services, dict], Awaitable[Any]]
    required: Tuple[str, ...]
    topics: Callable[[dict, Any], Set[str]]
    # re-run this long after an evaluation even without writes (ms), or None
    expires: Callable[[Services, dict], Awaitable[Optional[int]]] = _never


LIVE_QUERIES: Dict[str, LiveQuery] = {
    "users.others": LiveQuery(_users_others, ("external_id",), lambda a, v: {users_topic()}),
    "users.me": LiveQuery(_users_me, ("external_id",), lambda a, v: {users_topic()}),
    "conversations.list": LiveQuery(
        _conversations_list,
        ("user_id",),
        lambda a, v: {user_conversations_topic(a["user_id"]), users_topic()},
    ),
    "messages.list": LiveQuery(
        _messages_list,
        ("conversation_id",),
        lambda a, v: {messages_topic(a["conversation_id"]), users_topic()},
    ),
    "receipts.unread": LiveQuery(
        _unread,
        ("conversation_id", "user_id"),
        lambda a, v: {messages_topic(a["conversation_id"]), receipts_topic(a["conversation_id"], a["user_id"])},
    ),
    "typing.list": LiveQuery(
        _typing_list,
        ("conversation_id", "user_id"),
        lambda a, v: {typing_topic(a["conversation_id"]), users_topic()},
        expires=_typing_expiry,
    ),
}


_UNSET = object()


@dataclass(eq=False)
class Subscription:

    key: SubscriptionKey
    query: str
    args: dict
    send: Sender
    topics: Set[str] = field(default_factory=set)
    last_value: Any = _UNSET
    dirty: bool = False
    active: bool = True
    task: Optional[asyncio.Task] = None
    expiry: Optional[asyncio.TimerHandle] = None


class SubscriptionManager:

    def __init__(self, services_factory: Callable[[], Services]) -> None:
        self._services_factory = services_factory
        self._subscriptions: Dict[SubscriptionKey, Subscription] = {}
        self._by_topic: Dict[str, Set[SubscriptionKey]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._subscriptions)

    async def subscribe(self, connection_id: str, sub_id: str, query: str, args: dict, send: Sender) -> None:
        live_query = LIVE_QUERIES.get(query)
        if live_query is None:
            raise InvalidArgumentError(f"Unknown live query {query!r}")
        missing = [name for name in live_query.required if not args.get(name) or not isinstance(args[name], str)]
        if missing:
            raise InvalidArgumentError(f"Missing or invalid arguments for {query}: {', '.join(missing)}")
        key = (connection_id, sub_id)
        self.unsubscribe(connection_id, sub_id)
        sub = Subscription(key=key, query=query, args=dict(args), send=send)
        self._subscriptions[key] = sub
        # seed the index so writes racing the first evaluation are not missed
        self._reindex(sub, live_query.topics(sub.args, None))
        await asyncio.shield(self._mark(sub))

    def unsubscribe(self, connection_id: str, sub_id: str) -> None:
        sub = self._subscriptions.pop((connection_id, sub_id), None)
        if sub is not None:
            self._retire(sub)

    def drop_connection(self, connection_id: str) -> None:
        for key in [k for k in self._subscriptions if k[0] == connection_id]:
            self.unsubscribe(*key)

    async def handle_change(self, event: ChangeEvent) -> None:
        keys: Set[SubscriptionKey] = set()
        for topic in event.topics:
            keys |= self._by_topic.get(topic, set())
        subs = [self._subscriptions[k] for k in keys if k in self._subscriptions]
        if subs:
            logger.debug("%s touches %d live queries", event.kind, len(subs))
        for sub in subs:
            self._mark(sub)

    async def wait_idle(self) -> None:
        """Wait until every scheduled run, including ones scheduled meanwhile, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for key in list(self._subscriptions):
            self.unsubscribe(*key)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _mark(self, sub: Subscription) -> asyncio.Task:
        sub.dirty = True
        if sub.task is None or sub.task.done():
            sub.task = asyncio.create_task(self._run(sub))
            self._tasks.add(sub.task)
            sub.task.add_done_callback(self._forget)
        return sub.task

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Live query run crashed", exc_info=task.exception())

    async def _run(self, sub: Subscription) -> None:
        live_query = LIVE_QUERIES[sub.query]
        while sub.dirty and sub.active:
            sub.dirty = False
            services = self._services_factory()
            try:
                value = await live_query.evaluate(services, sub.args)
                expires_in = await live_query.expires(services, sub.args)
            except ChatError as exc:
                sub.last_value = _UNSET
                await self._push(sub, {"type": "error", "id": sub.key[1], "code": exc.code, "message": str(exc)})
                continue
            except Exception:
                logger.exception("Live query %s failed", sub.query)
                sub.last_value = _UNSET
                await self._push(sub, {"type": "error", "id": sub.key[1], "code": "internal", "message": "internal error"})
                continue
            if not sub.active:
                return
            self._reindex(sub, live_query.topics(sub.args, value))
            self._arm_expiry(sub, expires_in)
            if value != sub.last_value:
                sub.last_value = value
                await self._push(sub, {"type": "result", "id": sub.key[1], "value": value})

    async def _push(self, sub: Subscription, frame: dict) -> None:
        try:
            await sub.send(frame)
        except Exception:
            logger.warning("Dropping subscription %s: push failed", sub.key, exc_info=True)
            self.unsubscribe(*sub.key)

    def _arm_expiry(self, sub: Subscription, after_ms: Optional[int]) -> None:
        if sub.expiry is not None:
            sub.expiry.cancel()
            sub.expiry = None
        if after_ms is None:
            return
        loop = asyncio.get_running_loop()
        sub.expiry = loop.call_later(after_ms / 1000.0, self._expire, sub)

    def _expire(self, sub: Subscription) -> None:
        sub.expiry = None
        if sub.active:
            self._mark(sub)

    def _reindex(self, sub: Subscription, topics: Set[str]) -> None:
        for topic in sub.topics - topics:
            self._unindex(topic, sub.key)
        for topic in topics - sub.topics:
            self._by_topic.setdefault(topic, set()).add(sub.key)
        sub.topics = set(topics)

    def _unindex(self, topic: str, key: SubscriptionKey) -> None:
        keys = self._by_topic.get(topic)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_topic[topic]

    def _retire(self, sub: Subscription) -> None:
        sub.active = False
        for topic in sub.topics:
            self._unindex(topic, sub.key)
        sub.topics = set()
        if sub.expiry is not None:
            sub.expiry.cancel()
            sub.expiry = None
