import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from chatrelay.auth import resolve_user_id
from chatrelay.database import AsyncSessionLocal
from chatrelay.errors import Unauthenticated
from chatrelay.models.api.realtime import EventType, frame
from chatrelay.realtime import presence_registry
from chatrelay.realtime.websocket import (
    WS_CLOSE_UNAUTHENTICATED,
    FrameHandler,
    WebSocketTransport,
)
from chatrelay.services.fan_out_dispatcher import FanOutDispatcher

logger = logging.getLogger(__name__)

router = APIRouter()


async def announce_presence(user_id: str, online: bool) -> None:
    """Notify conversation partners of an online/offline transition."""
    try:
        async with AsyncSessionLocal() as db:
            await FanOutDispatcher(db).presence_changed(user_id, online)
    except Exception:
        logger.exception("Failed to announce presence of user %s", user_id)


@router.websocket("/ws")
async def realtime_channel(
    websocket: WebSocket, token: Optional[str] = Query(None)
) -> None:
    """
    Real-time channel for one client connection:
    1. Authenticate the handshake from the ``token`` query parameter
    2. Register the connection (first connection announces the user online)
    3. Handle inbound frames until the client disconnects
    4. Unregister (last connection announces the user offline)
    """
    # close codes only reach the client after accept
    await websocket.accept()
    try:
        user_id = resolve_user_id(token)
    except Unauthenticated as e:
        logger.info("Rejected real-time handshake: %s", e.detail)
        await websocket.close(code=WS_CLOSE_UNAUTHENTICATED, reason=e.detail)
        return

    registration = presence_registry.register(user_id, WebSocketTransport(websocket))
    connection = registration.connection
    handler = FrameHandler(connection)
    logger.info("Connection %s opened for user %s", connection.connection_id, user_id)

    try:
        await connection.push(
            frame(
                EventType.CONNECTED,
                {"connection_id": connection.connection_id, "user_id": user_id},
            )
        )
        if registration.came_online:
            await announce_presence(user_id, True)

        while True:
            raw = await websocket.receive_text()
            await handler.handle_text(raw)
    except WebSocketDisconnect as e:
        logger.info(
            "Connection %s closed by client (code %s)", connection.connection_id, e.code
        )
    finally:
        unregistration = presence_registry.unregister(connection.connection_id)
        if unregistration.went_offline:
            await announce_presence(user_id, False)
