"""Arguments of the mutations accepted over the live socket."""
from pydantic import BaseModel, Field

from chatsync.schemas.chat import ParticipantAction
from chatsync.schemas.user import OnlineStatusUpdate, ProfileUpsert


class UpsertProfileArgs(ProfileUpsert):

    external_id: str = Field(min_length=1)


class SetOnlineStatusArgs(OnlineStatusUpdate):

    external_id: str = Field(min_length=1)


class SendMessageArgs(BaseModel):

    conversation_id: str
    sender_id: str
    # blank content is rejected by the chat service
    content: str


class MessageTarget(BaseModel):

    message_id: str


class ConversationParticipant(ParticipantAction):

    conversation_id: str
