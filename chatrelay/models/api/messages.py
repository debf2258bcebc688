from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    FILE = "FILE"
    SYSTEM = "SYSTEM"


class MessageStatus(str, Enum):
    """Conversation-wide aggregate status, ordered from least to most advanced."""

    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    MessageStatus.PENDING,
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.READ,
]


class ReceiptKind(str, Enum):
    """What a recipient acknowledged."""

    DELIVERED = "DELIVERED"
    READ = "READ"


class SendMessageRequest(BaseModel):
    """Request model for sending a message."""

    conversation_id: UUID = Field(..., description="Target conversation")
    content: str = Field(..., description="Message content")
    type: MessageType = Field(default=MessageType.TEXT, description="Message type")


class MessageResponse(BaseModel):
    """Response model for message data."""

    id: UUID
    conversation_id: UUID
    seq: int
    sender_id: str
    content: str
    type: MessageType
    status: MessageStatus
    delivered_to: Dict[str, datetime] = Field(default_factory=dict)
    read_by: Dict[str, datetime] = Field(default_factory=dict)
    message_timestamp: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReceiptResult(BaseModel):
    """Outcome of applying one delivery or read acknowledgement."""

    message: MessageResponse
    changed: bool
