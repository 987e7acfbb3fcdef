from typing import List, Optional

from pydantic import BaseModel, Field

from chatsync.schemas.user import UserPublic


DELETED_PLACEHOLDER = "This message was deleted"


class ConversationCreate(BaseModel):

    user_a: str
    user_b: str


class ConversationRef(BaseModel):

    id: str
    created: bool = False


class MessageCreate(BaseModel):

    sender_id: str
    content: str = Field(min_length=1)


class MessageRef(BaseModel):

    id: str


class ParticipantAction(BaseModel):
    """Body of per-user conversation actions (mark read, typing)."""

    user_id: str


class MessageView(BaseModel):

    id: str
    conversation_id: str
    sender_id: str
    sender: Optional[UserPublic] = None
    content: str
    is_deleted: bool = False
    created_at: int

    @classmethod
    def from_doc(cls, doc: dict, sender: Optional[dict] = None) -> "MessageView":
        deleted = bool(doc.get("is_deleted"))
        return cls(
            id=doc["_id"],
            conversation_id=doc["conversation_id"],
            sender_id=doc["sender_id"],
            sender=UserPublic.from_doc(sender) if sender else None,
            content=DELETED_PLACEHOLDER if deleted else doc["content"],
            is_deleted=deleted,
            created_at=doc["created_at"],
        )


class ConversationView(BaseModel):

    id: str
    participants: List[str]
    last_message_at: Optional[int] = None
    other_user: Optional[UserPublic] = None
    last_message: Optional[MessageView] = None
    unread_count: int = 0


class UnreadCount(BaseModel):

    conversation_id: str
    user_id: str
    count: int
