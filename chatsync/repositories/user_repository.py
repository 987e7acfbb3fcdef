import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from chatsync.models.user import UserDocument
from chatsync.utils.ids import normalize, to_object_id


logger = logging.getLogger(__name__)


class UserRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    async def ensure_indexes(self) -> None:
        await self._collection.create_index([("external_id", ASCENDING)], unique=True)

    async def upsert_profile(
        self,
        external_id: str,
        name: str,
        email: str,
        avatar_url: Optional[str],
        now: int,
    ) -> UserDocument:
        update = {
            "$set": {"name": name, "email": email, "avatar_url": avatar_url, "is_online": True},
            "$setOnInsert": {"created_at": now},
        }
        try:
            doc = await self._collection.find_one_and_update(
                {"external_id": external_id}, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # two first logins raced on the upsert; the loser updates the winner's row
            logger.warning("Concurrent profile upsert for %s, retrying as update", external_id)
            doc = await self._collection.find_one_and_update(
                {"external_id": external_id}, update, return_document=ReturnDocument.AFTER
            )
        return normalize(doc)

    async def set_online(self, external_id: str, is_online: bool) -> bool:
        result = await self._collection.update_one(
            {"external_id": external_id}, {"$set": {"is_online": is_online}}
        )
        return bool(result.matched_count)

    async def get_by_external_id(self, external_id: str) -> Optional[UserDocument]:
        return normalize(await self._collection.find_one({"external_id": external_id}))

    async def get_by_id(self, user_id: str) -> Optional[UserDocument]:
        return normalize(await self._collection.find_one({"_id": to_object_id(user_id, "user id")}))

    async def get_many(self, user_ids: Iterable[str]) -> Dict[str, UserDocument]:
        oids = [to_object_id(uid, "user id") for uid in set(user_ids)]
        if not oids:
            return {}
        users = {}
        async for doc in self._collection.find({"_id": {"$in": oids}}):
            normalize(doc)
            users[doc["_id"]] = doc
        return users

    async def list_others(self, excluding_external_id: str, search: Optional[str] = None) -> List[UserDocument]:
        query: Dict[str, Any] = {"external_id": {"$ne": excluding_external_id}}
        if search:
            query["name"] = {"$regex": re.escape(search), "$options": "i"}
        items = []
        async for doc in self._collection.find(query):
            items.append(normalize(doc))
        return items
