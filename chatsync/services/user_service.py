import logging
from typing import List, Optional

from chatsync.repositories.user_repository import UserRepository
from chatsync.utils.clock import NowFunc, now_ms
from chatsync.utils.errors import InvalidArgumentError
from chatsync.utils.realtime_bus import ChangeEvent, LocalBus, users_topic


logger = logging.getLogger(__name__)


class UserService:
    """Identity and presence registry.

    Users are keyed by the identity provider's external id and are never
    deleted. The online flag moves only on login/connect (true) and
    disconnect (false); there is no heartbeat, so a client that dies without
    disconnecting stays online.
    """

    def __init__(self, user_repository: UserRepository, bus: LocalBus, now: NowFunc = now_ms):
        self.user_repository = user_repository
        self._bus = bus
        self._now = now

    async def upsert_profile(self, external_id: str, name: str, email: str, avatar_url: Optional[str] = None) -> str:
        if not isinstance(external_id, str) or not external_id.strip():
            raise InvalidArgumentError("external_id is required")
        doc = await self.user_repository.upsert_profile(external_id, name, email, avatar_url, self._now())
        logger.info("Upserted profile %s for %s", doc["_id"], external_id)
        await self._publish("user.upserted")
        return doc["_id"]

    async def set_online_status(self, external_id: str, is_online: bool) -> None:
        if await self.user_repository.set_online(external_id, is_online):
            await self._publish("user.presence")

    async def get_by_external_id(self, external_id: str) -> Optional[dict]:
        return await self.user_repository.get_by_external_id(external_id)

    async def get_by_id(self, user_id: str) -> Optional[dict]:
        return await self.user_repository.get_by_id(user_id)

    async def list_others(self, excluding_external_id: str, search: Optional[str] = None) -> List[dict]:
        return await self.user_repository.list_others(excluding_external_id, search)

    async def _publish(self, kind: str) -> None:
        try:
            await self._bus.publish(ChangeEvent.of(kind, [users_topic()]))
        except Exception:
            logger.exception("Failed to publish %s change", kind)
