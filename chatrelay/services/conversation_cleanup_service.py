import logging
from datetime import datetime
from typing import List, Sequence, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.models.api.conversations import ConversationResponse
from chatrelay.repositories.conversation_repository import ConversationRepository

logger = logging.getLogger(__name__)


class ConversationCleanupService:
    """Operations for an external retention job.

    Conversations go ``active -> tombstoned -> purged``; this service covers
    the last step and the listings a sweep needs to decide what to purge.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.conversation_repo = ConversationRepository(db)

    async def conversation_ids(self, active_only: bool = False) -> List[UUID]:
        if active_only:
            return await self.conversation_repo.active_ids()
        return await self.conversation_repo.all_ids()

    async def tombstoned_before(self, cutoff: datetime) -> List[ConversationResponse]:
        return await self.conversation_repo.tombstoned_before(cutoff)

    async def purge(self, ids: Sequence[Union[str, UUID]]) -> int:
        """Hard-delete conversations with their participants and messages."""
        purged = await self.conversation_repo.delete_by_ids(list(ids))
        logger.info("Purged %d of %d requested conversations", purged, len(ids))
        return purged
