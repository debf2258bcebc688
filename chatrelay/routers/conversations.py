from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth import current_user_id
from chatrelay.database import get_db
from chatrelay.models.api.conversations import (
    ConversationReadResponse,
    ConversationResponse,
    ConversationType,
    CreateDirectConversationRequest,
    CreateGroupRequest,
    UnreadCountResponse,
)
from chatrelay.models.api.messages import MessageResponse
from chatrelay.models.api.participants import AddParticipantRequest, ParticipantResponse
from chatrelay.services.fan_out_dispatcher import FanOutDispatcher
from chatrelay.services.membership_gate import MembershipGate
from chatrelay.services.message_store_service import MessageStoreService

router = APIRouter()


@router.get("", response_model=List[ConversationResponse])
async def list_conversations(
    type: Optional[ConversationType] = Query(
        None, description="Only DIRECT or only GROUP conversations"
    ),
    limit: int = Query(
        50, description="Maximum number of conversations to return", ge=1, le=1000
    ),
    offset: int = Query(0, description="Number of conversations to skip", ge=0),
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[ConversationResponse]:
    """
    List the caller's live conversations, most recently active first.

    Query parameters:
    - type: Filter by conversation type
    - limit: Maximum number of conversations to return (default: 50, max: 1000)
    - offset: Number of conversations to skip (default: 0)
    """
    gate = MembershipGate(db)
    return await gate.list_conversations(user_id, type, limit=limit, offset=offset)


@router.post("/direct", response_model=ConversationResponse)
async def open_direct_conversation(
    request: CreateDirectConversationRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationResponse:
    """Return the caller's direct conversation with a user, creating it if needed."""
    gate = MembershipGate(db)
    return await gate.create_direct_conversation(user_id, request.user_id)


@router.post("/group", response_model=ConversationResponse, status_code=201)
async def create_group(
    request: CreateGroupRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationResponse:
    gate = MembershipGate(db)
    return await gate.create_group_conversation(
        user_id, request.name, request.participant_ids
    )


@router.get("/{conversation_id}", response_model=ConversationResponse)
async def get_conversation(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationResponse:
    gate = MembershipGate(db)
    return await gate.get_conversation(conversation_id, user_id)


@router.delete("/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Tombstone a conversation. Data is kept until a retention purge."""
    gate = MembershipGate(db)
    await gate.tombstone_conversation(conversation_id, user_id)
    return Response(status_code=204)


@router.get("/{conversation_id}/messages", response_model=List[MessageResponse])
async def get_conversation_messages(
    conversation_id: UUID,
    after: int = Query(0, description="Return messages after this sequence", ge=0),
    before: Optional[int] = Query(
        None, description="Return the messages preceding this sequence", ge=1
    ),
    limit: int = Query(100, description="Maximum number of messages", ge=1, le=1000),
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[MessageResponse]:
    """
    Ordered message history.

    Query parameters:
    - after: Resume cursor; pass the last ``seq`` seen (default: 0)
    - before: Page backwards from this ``seq`` instead
    - limit: Maximum number of messages to return (default: 100, max: 1000)
    """
    store = MessageStoreService(db)
    return await store.list_since(
        conversation_id, user_id, after_seq=after, limit=limit, before_seq=before
    )


@router.post("/{conversation_id}/participants", response_model=ParticipantResponse)
async def add_participant(
    conversation_id: UUID,
    request: AddParticipantRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ParticipantResponse:
    gate = MembershipGate(db)
    return await gate.add_participant(conversation_id, user_id, request.user_id)


@router.delete("/{conversation_id}/participants/{participant_id}", status_code=204)
async def remove_participant(
    conversation_id: UUID,
    participant_id: str,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Remove a participant (or leave) and re-broadcast messages this settles."""
    dispatcher = FanOutDispatcher(db)
    await dispatcher.participant_removed(conversation_id, user_id, participant_id)
    return Response(status_code=204)


@router.post("/{conversation_id}/read", response_model=ConversationReadResponse)
async def mark_conversation_read(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> ConversationReadResponse:
    """Mark everything in the conversation as read and notify participants."""
    read_at = datetime.now(timezone.utc)
    dispatcher = FanOutDispatcher(db)
    changed = await dispatcher.conversation_read(conversation_id, user_id, read_at)
    return ConversationReadResponse(
        conversation_id=conversation_id,
        message_ids=[m.id for m in changed],
        read_at=read_at,
    )


@router.get("/{conversation_id}/unread", response_model=UnreadCountResponse)
async def get_unread_count(
    conversation_id: UUID,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> UnreadCountResponse:
    store = MessageStoreService(db)
    count = await store.unread_count(conversation_id, user_id)
    return UnreadCountResponse(conversation_id=conversation_id, unread_count=count)
