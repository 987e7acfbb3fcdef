from dataclasses import dataclass
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from chatsync.config import Settings, get_settings
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.read_receipt_repository import ReadReceiptRepository
from chatsync.repositories.typing_repository import TypingRepository
from chatsync.repositories.user_repository import UserRepository
from chatsync.services.chat_service import ChatService
from chatsync.services.projections import Projections
from chatsync.services.typing_service import TypingService
from chatsync.services.user_service import UserService
from chatsync.utils.clock import NowFunc, now_ms
from chatsync.utils.realtime_bus import LocalBus


@dataclass
class Services:

    users: UserService
    chat: ChatService
    typing: TypingService
    projections: Projections


def build_services(
    db: AsyncIOMotorDatabase,
    bus: LocalBus,
    now: NowFunc = now_ms,
    settings: Optional[Settings] = None,
) -> Services:
    settings = settings or get_settings()
    user_repo = UserRepository(db)
    users = UserService(user_repo, bus, now)
    chat = ChatService(
        MessageRepository(db),
        ConversationRepository(db),
        ReadReceiptRepository(db),
        user_repo,
        bus,
        now,
        settings,
    )
    typing = TypingService(TypingRepository(db), user_repo, chat, bus, now, settings.typing_window_ms)
    return Services(users=users, chat=chat, typing=typing, projections=Projections(users, chat, typing))


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    for repo in (
        UserRepository(db),
        ConversationRepository(db),
        MessageRepository(db),
        ReadReceiptRepository(db),
        TypingRepository(db),
    ):
        await repo.ensure_indexes()
