"""WebSocket transport and inbound frame handling."""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.database import AsyncSessionLocal
from chatrelay.errors import ChatRelayError
from chatrelay.models.api.messages import ReceiptKind
from chatrelay.models.api.realtime import (
    ChatMessagePayload,
    ConversationReadPayload,
    EventType,
    Frame,
    ReceiptPayload,
    frame,
)
from chatrelay.realtime.registry import Connection, ConnectionTransport
from chatrelay.services.fan_out_dispatcher import FanOutDispatcher

logger = logging.getLogger(__name__)

# Close code sent when the handshake credential is rejected
WS_CLOSE_UNAUTHENTICATED = 4401

RECEIPT_KINDS = {
    EventType.MESSAGE_DELIVERED.value: ReceiptKind.DELIVERED,
    EventType.MESSAGE_READ.value: ReceiptKind.READ,
}


class WebSocketTransport(ConnectionTransport):
    """Serializes sends so fan-out from other tasks cannot interleave frames."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._send_lock = asyncio.Lock()

    async def send_json(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def close(self, code: int = 1000) -> None:
        await self.websocket.close(code=code)


def _pydantic_fields(error: PydanticValidationError) -> Dict[str, str]:
    return {
        ".".join(str(part) for part in err["loc"]) or "data": err["msg"]
        for err in error.errors()
    }


class FrameHandler:
    """Handles the frames one connection sends.

    Every frame gets its own database session, so a slow or failing frame
    never holds state for the next one.
    """

    def __init__(
        self,
        connection: Connection,
        session_factory: Callable[[], Any] = AsyncSessionLocal,
    ):
        self.connection = connection
        self.session_factory = session_factory

    async def handle_text(self, raw: str) -> None:
        """Parse and dispatch one frame; problems go back as ERROR frames."""
        try:
            inbound = Frame.model_validate_json(raw)
        except PydanticValidationError as e:
            await self._reply_error("VALIDATION_ERROR", "Malformed frame", _pydantic_fields(e))
            return

        try:
            await self._dispatch(inbound)
        except ChatRelayError as e:
            logger.warning(
                "Rejected %s frame from user %s: %s",
                inbound.type,
                self.connection.user_id,
                e.detail,
            )
            await self._reply(frame(EventType.ERROR, {"type": inbound.type, **e.to_dict()}))
        except PydanticValidationError as e:
            await self._reply_error(
                "VALIDATION_ERROR", f"Invalid {inbound.type} payload", _pydantic_fields(e)
            )
        except Exception:
            logger.exception(
                "Failed to handle %s frame on connection %s",
                inbound.type,
                self.connection.connection_id,
            )
            await self._reply_error("INTERNAL_ERROR", "Failed to process frame")

    async def _dispatch(self, inbound: Frame) -> None:
        if inbound.type == EventType.PING.value:
            await self._reply(frame(EventType.PONG, inbound.data))
            return

        handlers: Dict[str, Callable[[FanOutDispatcher, Frame], Awaitable[None]]] = {
            EventType.MESSAGE.value: self._on_message,
            EventType.MESSAGE_DELIVERED.value: self._on_receipt,
            EventType.MESSAGE_READ.value: self._on_receipt,
            EventType.CONVERSATION_READ.value: self._on_conversation_read,
        }
        handler = handlers.get(inbound.type)
        if handler is None:
            await self._reply_error("UNKNOWN_TYPE", f"Unsupported frame type {inbound.type}")
            return

        async with self.session_factory() as db:
            await handler(self._dispatcher(db), inbound)

    def _dispatcher(self, db: AsyncSession) -> FanOutDispatcher:
        return FanOutDispatcher(db)

    async def _on_message(self, dispatcher: FanOutDispatcher, inbound: Frame) -> None:
        payload = ChatMessagePayload.model_validate(inbound.data)
        message = await dispatcher.send_message(
            payload.conversation_id,
            self.connection.user_id,
            payload.content,
            payload.type,
        )
        await self._reply(
            frame(
                EventType.ACK,
                {
                    "client_id": payload.client_id,
                    "message": message.model_dump(mode="json"),
                },
            )
        )

    async def _on_receipt(self, dispatcher: FanOutDispatcher, inbound: Frame) -> None:
        payload = ReceiptPayload.model_validate(inbound.data)
        await dispatcher.status_update(
            payload.message_id,
            self.connection.user_id,
            RECEIPT_KINDS[inbound.type],
            at=payload.timestamp,
            origin_connection_id=self.connection.connection_id,
        )

    async def _on_conversation_read(
        self, dispatcher: FanOutDispatcher, inbound: Frame
    ) -> None:
        payload = ConversationReadPayload.model_validate(inbound.data)
        await dispatcher.conversation_read(
            payload.conversation_id,
            self.connection.user_id,
            origin_connection_id=self.connection.connection_id,
        )

    async def _reply(self, payload: Dict[str, Any]) -> None:
        try:
            await self.connection.push(payload)
        except Exception as e:
            # The socket is going away; the receive loop will notice
            logger.debug(
                "Reply to connection %s failed: %r", self.connection.connection_id, e
            )

    async def _reply_error(
        self, code: str, detail: str, fields: Optional[Dict[str, str]] = None
    ) -> None:
        body: Dict[str, Any] = {"error": code, "detail": detail}
        if fields:
            body["fields"] = fields
        await self._reply(frame(EventType.ERROR, body))
