from typing import TypedDict


class TypingIndicatorDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    user_id: str
    # clearing sets now - window, so the record is already expired
    last_typed: int
