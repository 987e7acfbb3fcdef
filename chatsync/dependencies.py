from fastapi import Depends, Request

from chatsync.database.connection import mongo_db_dependency
from chatsync.services.container import Services, build_services
from chatsync.utils.clock import NowFunc
from chatsync.utils.realtime_bus import get_bus


def clock_dependency(request: Request) -> NowFunc:
    return request.app.state.now


async def bus_dependency():
    return await get_bus()


def get_services(
    db=Depends(mongo_db_dependency),
    bus=Depends(bus_dependency),
    now: NowFunc = Depends(clock_dependency),
) -> Services:
    return build_services(db, bus, now)
