from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from chatsync.dependencies import get_services
from chatsync.schemas.user import OnlineStatusUpdate, ProfileUpsert, UserPublic, UserRef
from chatsync.services.container import Services


router = APIRouter(prefix="/users", tags=["users"])


@router.put("/{external_id}", response_model=UserRef)
async def upsert_profile(external_id: str, body: ProfileUpsert, services: Services = Depends(get_services)):
    user_id = await services.users.upsert_profile(external_id, body.name, body.email, body.avatar_url)
    return UserRef(id=user_id)


@router.post("/{external_id}/online", status_code=204)
async def set_online_status(external_id: str, body: OnlineStatusUpdate, services: Services = Depends(get_services)):
    await services.users.set_online_status(external_id, body.is_online)


@router.get("/{external_id}", response_model=UserPublic)
async def get_by_external_id(external_id: str, services: Services = Depends(get_services)):
    user = await services.users.get_by_external_id(external_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return UserPublic.from_doc(user)


@router.get("", response_model=List[UserPublic])
async def list_others(
    exclude: str = Query(..., description="external id of the caller"),
    search: Optional[str] = None,
    services: Services = Depends(get_services),
):
    return await services.projections.other_users(exclude, search)
