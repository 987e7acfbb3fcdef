from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.read_receipt import ReadReceiptDocument


class ReadReceiptRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("read_receipts")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index(
            [("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )

    async def mark_read(self, conversation_id: str, user_id: str, watermark: int) -> None:
        await self._collection.update_one(
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$max": {"last_read": watermark}},
            upsert=True,
        )

    async def get_last_read(self, conversation_id: str, user_id: str) -> Optional[int]:
        doc: Optional[ReadReceiptDocument] = await self._collection.find_one(
            {"conversation_id": conversation_id, "user_id": user_id}
        )
        return doc["last_read"] if doc else None
