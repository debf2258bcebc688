from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class ParticipantRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class ParticipantResponse(BaseModel):
    """Response model for participant data."""

    conversation_id: UUID
    user_id: str
    role: ParticipantRole = ParticipantRole.MEMBER
    is_active: bool = True
    joined_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def can_manage_participants(self) -> bool:
        return self.role in (ParticipantRole.OWNER, ParticipantRole.ADMIN)


class AddParticipantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
