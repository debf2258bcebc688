from datetime import datetime
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.auth import require_admin
from chatrelay.database import get_db
from chatrelay.models.api.conversations import (
    ConversationResponse,
    PurgeRequest,
    PurgeResponse,
)
from chatrelay.services.conversation_cleanup_service import ConversationCleanupService

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/conversations", response_model=List[UUID])
async def list_conversation_ids(
    active_only: bool = Query(False, description="Exclude tombstoned conversations"),
    db: AsyncSession = Depends(get_db),
) -> List[UUID]:
    service = ConversationCleanupService(db)
    return await service.conversation_ids(active_only=active_only)


@router.get("/conversations/tombstoned", response_model=List[ConversationResponse])
async def list_tombstoned(
    before: datetime = Query(..., description="Tombstoned before this instant"),
    db: AsyncSession = Depends(get_db),
) -> List[ConversationResponse]:
    service = ConversationCleanupService(db)
    return await service.tombstoned_before(before)


@router.post("/conversations/purge", response_model=PurgeResponse)
async def purge_conversations(
    request: PurgeRequest, db: AsyncSession = Depends(get_db)
) -> PurgeResponse:
    service = ConversationCleanupService(db)
    return PurgeResponse(purged=await service.purge(request.ids))
