from typing import Dict, List, Optional, TypedDict


class ConversationDocument(TypedDict, total=False):
    _id: str
    # always the two user ids, sorted
    participants: List[str]
    # "<lo>:<hi>", unique across the collection
    pair_key: str
    last_message_at: Optional[int]
    message_seq: int
    # highest read watermark of either participant, absent until the first read
    read_floor: int
    # str(seq) -> created_at of sends whose insert has not landed
    pending: Dict[str, int]
    created_at: int
