"""Error taxonomy shared by services, routers and the real-time channel."""

import logging
from typing import Dict, Optional, cast

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatRelayError(Exception):
    """Base class for errors that are reported to the client."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, detail: str = "", fields: Optional[Dict[str, str]] = None):
        super().__init__(detail)
        self.detail = detail
        self.fields = fields or {}

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {"error": self.code, "detail": self.detail}
        if self.fields:
            body["fields"] = self.fields
        return body


class Unauthenticated(ChatRelayError):
    status_code = 401
    code = "UNAUTHENTICATED"


class AccessDenied(ChatRelayError):
    """The requester is not an active participant, or lacks the role."""

    status_code = 403
    code = "ACCESS_DENIED"


class OperationNotPermitted(AccessDenied):
    """The operation is not allowed on this kind of conversation."""

    code = "OPERATION_NOT_PERMITTED"


class ConversationNotFound(ChatRelayError):
    status_code = 404
    code = "CONVERSATION_NOT_FOUND"

    def __init__(self, conversation_id: object):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


class MessageNotFound(ChatRelayError):
    status_code = 404
    code = "MESSAGE_NOT_FOUND"

    def __init__(self, message_id: object):
        super().__init__(f"Message {message_id} not found")
        self.message_id = message_id


class ValidationError(ChatRelayError):
    """Malformed input; ``fields`` maps field names to problems."""

    status_code = 422
    code = "VALIDATION_ERROR"

    def __init__(self, fields: Dict[str, str]):
        detail = "; ".join(f"{field}: {problem}" for field, problem in fields.items())
        super().__init__(detail, fields)


class TransientDeliveryFailure(ChatRelayError):
    """A single push to a live connection failed. Never reaches the sender."""

    code = "TRANSIENT_DELIVERY_FAILURE"

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"Push to connection {connection_id} failed: {reason}")
        self.connection_id = connection_id
        self.reason = reason


async def chatrelay_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = cast(ChatRelayError, exc)
    if error.status_code >= 500:
        logger.error("Unhandled service error on %s: %s", request.url.path, error)
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    """Map the error taxonomy onto JSON HTTP responses."""
    app.add_exception_handler(ChatRelayError, chatrelay_error_handler)
