import logging
from typing import List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from chatsync.models.message import MessageDocument
from chatsync.utils.ids import normalize, to_object_id


logger = logging.getLogger(__name__)


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)

    async def save_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
        created_at: int,
        seq: int,
    ) -> MessageDocument:
        doc: MessageDocument = {
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "is_deleted": False,
            "created_at": created_at,
            "seq": seq,
        }
        result = await self.collection.insert_one(doc)
        doc["_id"] = str(result.inserted_id)
        return doc

    async def get_messages_by_conversation(self, conversation_id: str) -> List[MessageDocument]:
        cur = self.collection.find({"conversation_id": conversation_id}).sort("seq", ASCENDING)
        items = []
        async for doc in cur:
            items.append(normalize(doc))
        return items

    async def get_last_message(self, conversation_id: str) -> Optional[MessageDocument]:
        cur = self.collection.find({"conversation_id": conversation_id}).sort("seq", DESCENDING).limit(1)
        items = await cur.to_list(length=1)
        return normalize(items[0]) if items else None

    async def soft_delete(self, message_id: str) -> Optional[MessageDocument]:
        """Flag a message deleted; returns the message only if this call changed it."""
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id, "message id"), "is_deleted": False},
            {"$set": {"is_deleted": True}},
            return_document=ReturnDocument.AFTER,
        )
        return normalize(doc)

    async def count_unread(self, conversation_id: str, user_id: str, watermark: int) -> int:
        return await self.collection.count_documents(
            {
                "conversation_id": conversation_id,
                "sender_id": {"$ne": user_id},
                "is_deleted": False,
                "created_at": {"$gt": watermark},
            }
        )
