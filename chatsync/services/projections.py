from typing import List

from chatsync.schemas.chat import ConversationView, MessageView
from chatsync.schemas.user import UserPublic
from chatsync.services.chat_service import ChatService
from chatsync.services.typing_service import TypingService
from chatsync.services.user_service import UserService


class Projections:
    """Read views composed from the owning services on every call."""

    def __init__(self, users: UserService, chat: ChatService, typing: TypingService) -> None:
        self._users = users
        self._chat = chat
        self._typing = typing

    async def conversation_list(self, user_id: str) -> List[ConversationView]:
        views = []
        for item in await self._chat.list_conversations(user_id):
            convo, other, last = item["conversation"], item["other_user"], item["last_message"]
            views.append(
                ConversationView(
                    id=convo["_id"],
                    participants=convo["participants"],
                    last_message_at=convo.get("last_message_at"),
                    other_user=UserPublic.from_doc(other) if other else None,
                    last_message=MessageView.from_doc(last) if last else None,
                    unread_count=await self._chat.unread_count(convo["_id"], user_id),
                )
            )
        return views

    async def message_list(self, conversation_id: str) -> List[MessageView]:
        items = await self._chat.list_messages(conversation_id)
        return [MessageView.from_doc(i["message"], i["sender"]) for i in items]

    async def typing_users(self, conversation_id: str, excluding_user_id: str) -> List[UserPublic]:
        return [UserPublic.from_doc(u) for u in await self._typing.list_typing(conversation_id, excluding_user_id)]

    async def other_users(self, excluding_external_id: str, search: str | None = None) -> List[UserPublic]:
        return [UserPublic.from_doc(u) for u in await self._users.list_others(excluding_external_id, search)]
