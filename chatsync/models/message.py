from typing import TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    is_deleted: bool
    # ms since epoch, non-decreasing within a conversation
    created_at: int
    # position within the conversation
    seq: int
