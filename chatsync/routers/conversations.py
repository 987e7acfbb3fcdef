from typing import List

from fastapi import APIRouter, Depends, Query

from chatsync.dependencies import get_services
from chatsync.schemas.chat import (
    ConversationCreate,
    ConversationRef,
    ConversationView,
    MessageCreate,
    MessageRef,
    MessageView,
    ParticipantAction,
    UnreadCount,
)
from chatsync.schemas.user import UserPublic
from chatsync.services.container import Services


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("", response_model=ConversationRef)
async def get_or_create_conversation(body: ConversationCreate, services: Services = Depends(get_services)):
    conversation_id, created = await services.chat.get_or_create_conversation(body.user_a, body.user_b)
    return ConversationRef(id=conversation_id, created=created)


@router.get("", response_model=List[ConversationView])
async def list_conversations(user_id: str = Query(...), services: Services = Depends(get_services)):
    return await services.projections.conversation_list(user_id)


@router.post("/{conversation_id}/messages", response_model=MessageRef, status_code=201)
async def send_message(conversation_id: str, body: MessageCreate, services: Services = Depends(get_services)):
    message_id = await services.chat.send_message(conversation_id, body.sender_id, body.content)
    return MessageRef(id=message_id)


@router.get("/{conversation_id}/messages", response_model=List[MessageView])
async def list_messages(conversation_id: str, services: Services = Depends(get_services)):
    return await services.projections.message_list(conversation_id)


@router.post("/{conversation_id}/read", status_code=204)
async def mark_read(conversation_id: str, body: ParticipantAction, services: Services = Depends(get_services)):
    await services.chat.mark_read(conversation_id, body.user_id)


@router.get("/{conversation_id}/unread", response_model=UnreadCount)
async def unread_count(conversation_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    count = await services.chat.unread_count(conversation_id, user_id)
    return UnreadCount(conversation_id=conversation_id, user_id=user_id, count=count)


@router.post("/{conversation_id}/typing", status_code=204)
async def set_typing(conversation_id: str, body: ParticipantAction, services: Services = Depends(get_services)):
    await services.typing.set_typing(conversation_id, body.user_id)


@router.delete("/{conversation_id}/typing", status_code=204)
async def clear_typing(conversation_id: str, user_id: str = Query(...), services: Services = Depends(get_services)):
    await services.typing.clear_typing(conversation_id, user_id)


@router.get("/{conversation_id}/typing", response_model=List[UserPublic])
async def list_typing(conversation_id: str, exclude: str = Query(...), services: Services = Depends(get_services)):
    return await services.projections.typing_users(conversation_id, exclude)
