import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from chatsync.config import configure_logging
from chatsync.database.connection import (
    close_mongo_connection,
    connect_to_mongo,
    get_database,
    is_connected,
)
from chatsync.routers.conversations import router as conversations_router
from chatsync.routers.live import router as live_router
from chatsync.routers.messages import router as messages_router
from chatsync.routers.users import router as users_router
from chatsync.services.container import build_services, ensure_indexes
from chatsync.services.subscriptions import SubscriptionManager
from chatsync.utils.clock import now_ms
from chatsync.utils.errors import ChatError, ConflictError, InvalidArgumentError, NotFoundError
from chatsync.utils.realtime_bus import get_bus


logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    NotFoundError: 404,
    InvalidArgumentError: 400,
    ConflictError: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # an embedder (or a test) may have installed a database already
    owns_connection = not is_connected()
    if owns_connection:
        await connect_to_mongo()
    await ensure_indexes(get_database())
    bus = await get_bus()
    subscriptions = SubscriptionManager(lambda: build_services(get_database(), bus, app.state.now))
    app.state.subscriptions = subscriptions
    bus.add_listener(subscriptions.handle_change)
    await bus.start()
    try:
        yield
    finally:
        bus.remove_listener(subscriptions.handle_change)
        await subscriptions.close()
        await bus.stop()
        if owns_connection:
            await close_mongo_connection()


def create_app() -> FastAPI:
    app = FastAPI(title="chatsync", lifespan=lifespan)
    app.state.now = now_ms

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        status = next((code for kind, code in STATUS_BY_ERROR.items() if isinstance(exc, kind)), 500)
        if status >= 500:
            logger.error("Unhandled chat error on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=status, content={"code": exc.code, "detail": str(exc)})

    app.include_router(users_router)
    app.include_router(conversations_router)
    app.include_router(messages_router)
    app.include_router(live_router)

    @app.get("/")
    async def root():
        db = get_database()
        collections = await db.list_collection_names()
        return {"message": "chatsync is up", "collections": collections}

    return app


app = create_app()
