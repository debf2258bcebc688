# Wire contracts and table mappings
from .api import (
    ConversationResponse,
    ConversationType,
    MessageResponse,
    MessageStatus,
    ParticipantResponse,
    ReceiptKind,
    SendMessageRequest,
)
from .db import (
    ConversationModel,
    MessageModel,
    ParticipantModel,
)

__all__ = [
    # API models
    "SendMessageRequest",
    "MessageResponse",
    "MessageStatus",
    "ReceiptKind",
    "ConversationResponse",
    "ConversationType",
    "ParticipantResponse",
    # DB models
    "ConversationModel",
    "MessageModel",
    "ParticipantModel",
]
