import logging
from typing import List, Optional

from chatsync.config import get_settings
from chatsync.repositories.typing_repository import TypingRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.services.chat_service import ChatService
from chatsync.utils.clock import NowFunc, now_ms
from chatsync.utils.realtime_bus import ChangeEvent, LocalBus, typing_topic


logger = logging.getLogger(__name__)


class TypingService:
    """Ephemeral "is typing" state.

    A record counts as typing while ``now - last_typed < window_ms``. Nothing
    expires records; readers filter on time and must re-query once the
    window has passed.
    """

    def __init__(
        self,
        typing_repo: TypingRepository,
        user_repo: UserRepository,
        chat_service: ChatService,
        bus: LocalBus,
        now: NowFunc = now_ms,
        window_ms: Optional[int] = None,
    ) -> None:
        self._typing_repo = typing_repo
        self._user_repo = user_repo
        self._chat = chat_service
        self._bus = bus
        self._now = now
        self.window_ms = window_ms if window_ms is not None else get_settings().typing_window_ms

    async def set_typing(self, conversation_id: str, user_id: str) -> None:
        await self._chat.get_participant_conversation(conversation_id, user_id)
        await self._typing_repo.set_typing(conversation_id, user_id, self._now())
        await self._publish("typing.set", conversation_id)

    async def clear_typing(self, conversation_id: str, user_id: str) -> None:
        await self._chat.get_conversation(conversation_id)
        # already expired at clear time, and stays so as the clock moves on
        sentinel = self._now() - self.window_ms
        if await self._typing_repo.clear_typing(conversation_id, user_id, sentinel):
            await self._publish("typing.cleared", conversation_id)

    async def list_typing(self, conversation_id: str, excluding_user_id: str) -> List[dict]:
        await self._chat.get_conversation(conversation_id)
        since = self._now() - self.window_ms
        records = await self._typing_repo.list_typing_since(conversation_id, excluding_user_id, since)
        users = await self._user_repo.get_many(r["user_id"] for r in records)
        return [users[r["user_id"]] for r in records if r["user_id"] in users]

    async def expires_in(self, conversation_id: str, excluding_user_id: str) -> Optional[int]:
        """Milliseconds until the oldest live indicator drops out of the window, or None."""
        now = self._now()
        records = await self._typing_repo.list_typing_since(conversation_id, excluding_user_id, now - self.window_ms)
        if not records:
            return None
        oldest = min(r["last_typed"] for r in records)
        return max(1, oldest + self.window_ms - now)

    async def _publish(self, kind: str, conversation_id: str) -> None:
        try:
            await self._bus.publish(ChangeEvent.of(kind, [typing_topic(conversation_id)]))
        except Exception:
            logger.exception("Failed to publish %s change", kind)
