from fastapi import APIRouter, Depends

from chatsync.dependencies import get_services
from chatsync.services.container import Services


router = APIRouter(prefix="/messages", tags=["chat"])


@router.delete("/{message_id}", status_code=204)
async def delete_message(message_id: str, services: Services = Depends(get_services)):
    # sender-only restriction is the caller's job
    await services.chat.delete_message(message_id)
