import logging
from typing import List, Optional, Tuple

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING
from pymongo.errors import DuplicateKeyError

from chatsync.models.conversation import ConversationDocument
from chatsync.utils.errors import ConflictError, NotFoundError
from chatsync.utils.ids import normalize, to_object_id


logger = logging.getLogger(__name__)


def pair_key(user_a: str, user_b: str) -> str:
    low, high = sorted([user_a, user_b])
    return f"{low}:{high}"


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._db = db

    @property
    def collection(self):
        return self._db["conversations"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("pair_key", ASCENDING)], unique=True)
        await self.collection.create_index([("participants", ASCENDING)])

    async def get(self, conversation_id: str) -> Optional[ConversationDocument]:
        oid = to_object_id(conversation_id, "conversation id")
        return normalize(await self.collection.find_one({"_id": oid}))

    async def get_or_create_one_to_one(self, user_a: str, user_b: str, now: int) -> Tuple[ConversationDocument, bool]:
        """Return the conversation of the unordered pair, creating it on first contact.

        The unique index on ``pair_key`` arbitrates concurrent first contacts:
        whoever loses the insert re-reads the winner's document.
        """
        key = pair_key(user_a, user_b)
        existing = await self.collection.find_one({"pair_key": key})
        if existing:
            return normalize(existing), False
        doc: ConversationDocument = {
            "participants": sorted([user_a, user_b]),
            "pair_key": key,
            "last_message_at": None,
            "message_seq": 0,
            "created_at": now,
        }
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            logger.warning("Conversation for pair %s created concurrently, using existing", key)
            existing = await self.collection.find_one({"pair_key": key})
            return normalize(existing), False
        doc["_id"] = str(result.inserted_id)
        logger.info("Created conversation %s for pair %s", doc["_id"], key)
        return doc, True

    async def bump_activity(self, conversation_id: str, now: int, attempts: int = 10) -> Tuple[int, int]:
        """Reserve the next message slot and move ``last_message_at`` forward.

        Returns ``(seq, timestamp)``. The timestamp never goes below the
        conversation's current ``last_message_at``, so message times are
        non-decreasing even when the wall clock is not. It also stays above
        ``read_floor``, the newest watermark a participant has set.

        The slot is recorded under ``pending`` until :meth:`settle` is called
        for it, so readers can tell a message is on its way.
        """
        oid = to_object_id(conversation_id, "conversation id")
        for attempt in range(attempts):
            convo = await self.collection.find_one({"_id": oid})
            if convo is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            current_seq = convo.get("message_seq", 0)
            timestamp = max(now, convo.get("last_message_at") or 0)
            if convo.get("read_floor") is not None:
                timestamp = max(timestamp, convo["read_floor"] + 1)
            result = await self.collection.update_one(
                {"_id": oid, "message_seq": current_seq},
                {
                    "$set": {
                        "last_message_at": timestamp,
                        "message_seq": current_seq + 1,
                        f"pending.{current_seq + 1}": timestamp,
                    }
                },
            )
            if result.modified_count:
                return current_seq + 1, timestamp
            logger.warning("Activity bump on %s lost a race (attempt %d)", conversation_id, attempt + 1)
        raise ConflictError(f"Could not reserve a message slot in conversation {conversation_id}")

    async def settle(self, conversation_id: str, seq: int) -> None:
        oid = to_object_id(conversation_id, "conversation id")
        await self.collection.update_one({"_id": oid}, {"$unset": {f"pending.{seq}": ""}})

    async def raise_read_floor(self, conversation_id: str, expected_seq: int, watermark: int) -> bool:
        """Record ``watermark`` as read, unless a message slot was reserved since ``expected_seq``."""
        oid = to_object_id(conversation_id, "conversation id")
        result = await self.collection.update_one(
            {"_id": oid, "message_seq": expected_seq},
            {"$max": {"read_floor": watermark}},
        )
        return result.matched_count > 0

    async def list_for_user(self, user_id: str) -> List[ConversationDocument]:
        items = []
        async for doc in self.collection.find({"participants": user_id}):
            items.append(normalize(doc))
        # conversations without activity sort last
        items.sort(key=lambda c: (c.get("last_message_at") or 0, c.get("created_at") or 0), reverse=True)
        return items
