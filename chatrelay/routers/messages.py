from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth import current_user_id
from chatrelay.database import get_db
from chatrelay.models.api.messages import MessageResponse, ReceiptKind, SendMessageRequest
from chatrelay.services.fan_out_dispatcher import FanOutDispatcher

router = APIRouter()


@router.post("", response_model=MessageResponse, status_code=201)
async def send_message(
    request: SendMessageRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Persist a message and push it to the other participants."""
    dispatcher = FanOutDispatcher(db)
    return await dispatcher.send_message(
        request.conversation_id, user_id, request.content, request.type
    )


@router.post("/{message_id}/delivered", response_model=MessageResponse)
async def acknowledge_delivery(
    message_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Delivery receipt for clients without a live socket."""
    dispatcher = FanOutDispatcher(db)
    result = await dispatcher.status_update(message_id, user_id, ReceiptKind.DELIVERED)
    return result.message


@router.post("/{message_id}/read", response_model=MessageResponse)
async def acknowledge_read(
    message_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    """Read receipt for clients without a live socket."""
    dispatcher = FanOutDispatcher(db)
    result = await dispatcher.status_update(message_id, user_id, ReceiptKind.READ)
    return result.message
