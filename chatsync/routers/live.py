import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Tuple, Type

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from chatsync.database.connection import get_database
from chatsync.schemas.chat import ConversationCreate
from chatsync.schemas.live import (
    ConversationParticipant,
    MessageTarget,
    SendMessageArgs,
    SetOnlineStatusArgs,
    UpsertProfileArgs,
)
from chatsync.services.container import Services, build_services
from chatsync.utils.errors import ChatError, InvalidArgumentError
from chatsync.utils.realtime_bus import get_bus
from chatsync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["live"])
manager = ConnectionManager()


async def _upsert_profile(services: Services, args: UpsertProfileArgs) -> Any:
    user_id = await services.users.upsert_profile(args.external_id, args.name, args.email, args.avatar_url)
    return {"id": user_id}


async def _get_or_create(services: Services, args: ConversationCreate) -> Any:
    conversation_id, created = await services.chat.get_or_create_conversation(args.user_a, args.user_b)
    return {"id": conversation_id, "created": created}


async def _send(services: Services, args: SendMessageArgs) -> Any:
    message_id = await services.chat.send_message(args.conversation_id, args.sender_id, args.content)
    return {"id": message_id}


MUTATIONS: Dict[str, Tuple[Type[BaseModel], Callable[[Services, Any], Awaitable[Any]]]] = {
    "upsertProfile": (UpsertProfileArgs, _upsert_profile),
    "setOnlineStatus": (
        SetOnlineStatusArgs,
        lambda s, a: s.users.set_online_status(a.external_id, a.is_online),
    ),
    "getOrCreateConversation": (ConversationCreate, _get_or_create),
    "sendMessage": (SendMessageArgs, _send),
    "deleteMessage": (MessageTarget, lambda s, a: s.chat.delete_message(a.message_id)),
    "markRead": (ConversationParticipant, lambda s, a: s.chat.mark_read(a.conversation_id, a.user_id)),
    "setTyping": (
        ConversationParticipant,
        lambda s, a: s.typing.set_typing(a.conversation_id, a.user_id),
    ),
    "clearTyping": (
        ConversationParticipant,
        lambda s, a: s.typing.clear_typing(a.conversation_id, a.user_id),
    ),
}


async def run_mutation(services: Services, name: str, args: dict) -> Any:
    entry = MUTATIONS.get(name)
    if entry is None:
        raise InvalidArgumentError(f"Unknown mutation {name!r}")
    model, handler = entry
    try:
        parsed = model.model_validate(args)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise InvalidArgumentError(f"Invalid arguments for {name}: {problems}") from None
    return await handler(services, parsed)


@router.websocket("/ws")
async def live_socket(websocket: WebSocket):
    external_id = websocket.query_params.get("external_id")
    if not external_id:
        await websocket.close(code=4400)
        return
    bus = await get_bus()
    now = websocket.app.state.now
    subscriptions = websocket.app.state.subscriptions
    services = build_services(get_database(), bus, now)
    if await services.users.get_by_external_id(external_id) is None:
        await websocket.close(code=4404)
        return

    connection_id = uuid.uuid4().hex
    send_lock = asyncio.Lock()

    async def send(frame: dict) -> None:
        async with send_lock:
            await websocket.send_text(json.dumps(frame))

    await services.users.set_online_status(external_id, True)
    await manager.connect(external_id, websocket)
    logger.info("Live connection %s opened for %s", connection_id, external_id)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                await send({"type": "error", "code": InvalidArgumentError.code, "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await send({"type": "error", "code": InvalidArgumentError.code, "message": "Invalid frame"})
                continue
            frame_id = msg.get("id")
            args = msg.get("args") or {}
            try:
                if not isinstance(args, dict):
                    raise InvalidArgumentError("args must be an object")
                if msg.get("type") == "subscribe":
                    await subscriptions.subscribe(connection_id, str(frame_id), msg.get("query", ""), args, send)
                elif msg.get("type") == "unsubscribe":
                    subscriptions.unsubscribe(connection_id, str(frame_id))
                elif msg.get("type") == "mutation":
                    result = await run_mutation(services, msg.get("name", ""), args)
                    await send({"type": "ack", "id": frame_id, "value": result})
                else:
                    raise InvalidArgumentError(f"Unknown frame type {msg.get('type')!r}")
            except ChatError as exc:
                await send({"type": "error", "id": frame_id, "code": exc.code, "message": str(exc)})
    except WebSocketDisconnect:
        pass
    finally:
        subscriptions.drop_connection(connection_id)
        if manager.disconnect(external_id, websocket):
            await services.users.set_online_status(external_id, False)
        logger.info("Live connection %s closed for %s", connection_id, external_id)
