import logging
from typing import Any, Dict, List, Optional, Tuple

from chatsync.config import Settings, get_settings
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.read_receipt_repository import ReadReceiptRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.utils.clock import NowFunc, now_ms
from chatsync.utils.errors import ConflictError, InvalidArgumentError, NotFoundError
from chatsync.utils.realtime_bus import (
    ChangeEvent,
    LocalBus,
    messages_topic,
    receipts_topic,
    user_conversations_topic,
)


logger = logging.getLogger(__name__)


class ChatService:
    """Conversation directory, message store and read-receipt tracker."""

    def __init__(
        self,
        message_repo: MessageRepository,
        conversation_repo: ConversationRepository,
        receipt_repo: ReadReceiptRepository,
        user_repo: UserRepository,
        bus: LocalBus,
        now: NowFunc = now_ms,
        settings: Optional[Settings] = None,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._receipt_repo = receipt_repo
        self._user_repo = user_repo
        self._bus = bus
        self._now = now
        self._settings = settings or get_settings()

    # conversations

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> Tuple[str, bool]:
        if user_a == user_b:
            raise InvalidArgumentError("A conversation needs two distinct users")
        for user_id in (user_a, user_b):
            if await self._user_repo.get_by_id(user_id) is None:
                raise NotFoundError(f"User {user_id} not found")
        convo, created = await self._conversation_repo.get_or_create_one_to_one(user_a, user_b, self._now())
        if created:
            await self._publish("conversation.created", [user_conversations_topic(p) for p in convo["participants"]])
        return convo["_id"], created

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        convo = await self._conversation_repo.get(conversation_id)
        if convo is None:
            raise NotFoundError(f"Conversation {conversation_id} not found")
        return convo

    async def get_participant_conversation(self, conversation_id: str, user_id: str) -> Dict[str, Any]:
        convo = await self.get_conversation(conversation_id)
        if user_id not in convo["participants"]:
            raise InvalidArgumentError(f"User {user_id} is not a participant of {conversation_id}")
        return convo

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        """Conversations of ``user_id`` joined with the other participant and last message."""
        conversations = await self._conversation_repo.list_for_user(user_id)
        others = [next((p for p in c["participants"] if p != user_id), None) for c in conversations]
        users = await self._user_repo.get_many(o for o in others if o)
        items = []
        for convo, other_id in zip(conversations, others):
            items.append(
                {
                    "conversation": convo,
                    "other_user": users.get(other_id),
                    "last_message": await self._message_repo.get_last_message(convo["_id"]),
                }
            )
        return items

    # messages

    async def send_message(self, conversation_id: str, sender_id: str, content: str) -> str:
        if not isinstance(content, str) or not content.strip():
            raise InvalidArgumentError("Message content cannot be empty")
        convo = await self.get_participant_conversation(conversation_id, sender_id)
        seq, timestamp = await self._conversation_repo.bump_activity(
            conversation_id, self._now(), attempts=self._settings.send_retry_attempts
        )
        try:
            saved = await self._message_repo.save_message(
                conversation_id=conversation_id,
                sender_id=sender_id,
                content=content,
                created_at=timestamp,
                seq=seq,
            )
        except Exception:
            logger.exception("Message insert failed after activity bump in %s (seq %d)", conversation_id, seq)
            raise
        finally:
            await self._conversation_repo.settle(conversation_id, seq)
        logger.info("Message %s sent in %s (seq %d)", saved["_id"], conversation_id, seq)
        await self._publish(
            "message.sent",
            [messages_topic(conversation_id)] + [user_conversations_topic(p) for p in convo["participants"]],
        )
        return saved["_id"]

    async def list_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Raw messages with their sender; deleted content is still present here."""
        await self.get_conversation(conversation_id)
        messages = await self._message_repo.get_messages_by_conversation(conversation_id)
        senders = await self._user_repo.get_many(m["sender_id"] for m in messages)
        return [{"message": m, "sender": senders.get(m["sender_id"])} for m in messages]

    async def delete_message(self, message_id: str) -> None:
        deleted = await self._message_repo.soft_delete(message_id)
        if deleted is None:
            return
        logger.info("Message %s deleted", message_id)
        convo = await self._conversation_repo.get(deleted["conversation_id"])
        participants = convo["participants"] if convo else []
        await self._publish(
            "message.deleted",
            [messages_topic(deleted["conversation_id"])] + [user_conversations_topic(p) for p in participants],
        )

    # read receipts

    async def mark_read(self, conversation_id: str, user_id: str) -> None:
        """Move the watermark of ``user_id`` to now.

        The watermark stops short of any send that has reserved its slot but
        not inserted yet, and the conversation's ``read_floor`` is raised in
        the same compare-and-set so later sends are stamped after it.
        """
        for attempt in range(self._settings.send_retry_attempts):
            convo = await self.get_participant_conversation(conversation_id, user_id)
            watermark = self._now()
            pending = convo.get("pending") or {}
            if pending:
                watermark = min(watermark, min(pending.values()) - 1)
            if await self._conversation_repo.raise_read_floor(conversation_id, convo.get("message_seq", 0), watermark):
                break
            logger.warning("Read mark on %s raced a send (attempt %d)", conversation_id, attempt + 1)
        else:
            raise ConflictError(f"Could not mark conversation {conversation_id} read")
        await self._receipt_repo.mark_read(conversation_id, user_id, watermark)
        await self._publish(
            "receipt.updated",
            [receipts_topic(conversation_id, user_id), user_conversations_topic(user_id)],
        )

    async def unread_count(self, conversation_id: str, user_id: str) -> int:
        await self.get_conversation(conversation_id)
        watermark = await self._receipt_repo.get_last_read(conversation_id, user_id) or 0
        return await self._message_repo.count_unread(conversation_id, user_id, watermark)

    async def _publish(self, kind: str, topics: List[str]) -> None:
        try:
            await self._bus.publish(ChangeEvent.of(kind, topics))
        except Exception:
            logger.exception("Failed to publish %s change", kind)
