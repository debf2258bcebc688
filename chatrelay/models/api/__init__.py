# API models for request/response contracts
from .conversations import (
    ConversationReadResponse,
    ConversationResponse,
    ConversationType,
    CreateDirectConversationRequest,
    CreateGroupRequest,
    PurgeRequest,
    PurgeResponse,
    UnreadCountResponse,
)
from .messages import (
    MessageResponse,
    MessageStatus,
    MessageType,
    ReceiptKind,
    ReceiptResult,
    SendMessageRequest,
)
from .participants import AddParticipantRequest, ParticipantResponse, ParticipantRole
from .realtime import EventType, Frame, frame

__all__ = [
    "SendMessageRequest",
    "MessageResponse",
    "MessageStatus",
    "MessageType",
    "ReceiptKind",
    "ReceiptResult",
    "ConversationResponse",
    "ConversationType",
    "ConversationReadResponse",
    "CreateDirectConversationRequest",
    "CreateGroupRequest",
    "UnreadCountResponse",
    "PurgeRequest",
    "PurgeResponse",
    "ParticipantResponse",
    "ParticipantRole",
    "AddParticipantRequest",
    "EventType",
    "Frame",
    "frame",
]
