from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .participants import ParticipantResponse


class ConversationType(str, Enum):
    DIRECT = "DIRECT"
    GROUP = "GROUP"


class ConversationResponse(BaseModel):
    """Response model for conversation data."""

    id: UUID
    type: ConversationType
    name: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None
    participants: List[ParticipantResponse] = Field(default_factory=list)
    last_message_seq: int = 0
    last_message_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def active_user_ids(self) -> List[str]:
        return [p.user_id for p in self.participants if p.is_active]


class CreateDirectConversationRequest(BaseModel):
    """Open (or reuse) a two-party conversation with ``user_id``."""

    user_id: str = Field(..., min_length=1, description="The other participant")


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    participant_ids: List[str] = Field(
        default_factory=list, description="Initial members besides the creator"
    )


class UnreadCountResponse(BaseModel):
    conversation_id: UUID
    unread_count: int


class ConversationReadResponse(BaseModel):
    conversation_id: UUID
    message_ids: List[UUID]
    read_at: datetime


class PurgeRequest(BaseModel):
    ids: List[UUID] = Field(..., description="Conversations to hard-delete")


class PurgeResponse(BaseModel):
    purged: int
