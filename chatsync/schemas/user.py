from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class ProfileUpsert(BaseModel):

    name: str = Field(min_length=1)
    email: EmailStr
    avatar_url: Optional[str] = None


class OnlineStatusUpdate(BaseModel):

    is_online: bool


class UserPublic(BaseModel):

    id: str
    external_id: str
    name: str
    email: str
    avatar_url: Optional[str] = None
    is_online: bool = False

    @classmethod
    def from_doc(cls, doc: dict) -> "UserPublic":
        return cls(
            id=doc["_id"],
            external_id=doc["external_id"],
            name=doc.get("name", ""),
            email=doc.get("email", ""),
            avatar_url=doc.get("avatar_url"),
            is_online=bool(doc.get("is_online")),
        )


class UserRef(BaseModel):

    id: str
