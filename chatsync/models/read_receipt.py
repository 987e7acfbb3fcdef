from typing import TypedDict


class ReadReceiptDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    last_read: int
