"""Real-time channel frames.

Every frame is ``{"type": ..., "data": {...}}``.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .messages import MessageStatus, MessageType, ReceiptKind


class EventType(str, Enum):
    # client -> server and server -> client
    MESSAGE = "MESSAGE"
    MESSAGE_DELIVERED = "MESSAGE_DELIVERED"
    MESSAGE_READ = "MESSAGE_READ"
    CONVERSATION_READ = "CONVERSATION_READ"
    PING = "PING"
    # server -> client only
    CONNECTED = "CONNECTED"
    ACK = "ACK"
    PRESENCE = "PRESENCE"
    PONG = "PONG"
    ERROR = "ERROR"


RECEIPT_EVENTS = {
    ReceiptKind.DELIVERED: EventType.MESSAGE_DELIVERED,
    ReceiptKind.READ: EventType.MESSAGE_READ,
}


class Frame(BaseModel):
    """Envelope for frames in both directions."""

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class ChatMessagePayload(BaseModel):
    """Inbound ``MESSAGE`` data."""

    conversation_id: UUID
    content: str
    type: MessageType = MessageType.TEXT
    client_id: Optional[str] = None


class ReceiptPayload(BaseModel):
    """Inbound ``MESSAGE_DELIVERED`` / ``MESSAGE_READ`` data."""

    message_id: UUID
    timestamp: Optional[datetime] = None


class ConversationReadPayload(BaseModel):
    conversation_id: UUID


class MessageStatusUpdate(BaseModel):
    """Outbound receipt broadcast."""

    message_id: UUID
    conversation_id: UUID
    user_id: str
    status_type: ReceiptKind
    status: MessageStatus
    timestamp: datetime


class ConversationReadUpdate(BaseModel):
    conversation_id: UUID
    user_id: str
    message_ids: List[UUID]
    statuses: Dict[str, MessageStatus] = Field(default_factory=dict)
    timestamp: datetime


class PresenceUpdate(BaseModel):
    user_id: str
    online: bool


def frame(event: EventType, data: Any = None) -> Dict[str, Any]:
    """Build a JSON-ready outbound frame from a model or a plain dict."""
    if isinstance(data, BaseModel):
        payload = data.model_dump(mode="json")
    else:
        payload = data or {}
    return {"type": event.value, "data": payload}
