from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    # stable identity issued by the identity provider
    external_id: str
    name: str
    email: str
    avatar_url: Optional[str]
    is_online: bool
    created_at: int
