from typing import List

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING

from chatsync.models.typing_indicator import TypingIndicatorDocument


class TypingRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("typing_indicators")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index(
            [("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )

    async def set_typing(self, conversation_id: str, user_id: str, now: int) -> None:
        await self._collection.update_one(
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$set": {"last_typed": now}},
            upsert=True,
        )

    async def clear_typing(self, conversation_id: str, user_id: str, sentinel: int) -> bool:
        result = await self._collection.update_one(
            {"conversation_id": conversation_id, "user_id": user_id},
            {"$set": {"last_typed": sentinel}},
        )
        return bool(result.matched_count)

    async def list_typing_since(self, conversation_id: str, excluding_user_id: str, since: int) -> List[TypingIndicatorDocument]:
        cursor = self._collection.find(
            {
                "conversation_id": conversation_id,
                "user_id": {"$ne": excluding_user_id},
                "last_typed": {"$gt": since},
            }
        )
        return await cursor.to_list(length=None)
