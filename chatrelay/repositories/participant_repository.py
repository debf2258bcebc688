from datetime import datetime, timezone
from typing import Any, List, Optional, Union
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import aliased

from chatrelay.models.api.participants import ParticipantResponse, ParticipantRole
from chatrelay.models.db.conversation_model import ConversationModel
from chatrelay.models.db.participant_model import ParticipantModel
from chatrelay.repositories.base_repository import BaseRepository, as_uuid


class ParticipantRepository(BaseRepository[ParticipantModel, ParticipantResponse]):
    """Repository for participant operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ParticipantModel)

    async def get(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> Optional[ParticipantResponse]:
        """Get the membership row for a user, active or not."""
        db_model = await self._get_model(conversation_id, user_id)
        return self._to_pydantic(db_model) if db_model else None

    async def get_active(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> Optional[ParticipantResponse]:
        participant = await self.get(conversation_id, user_id)
        return participant if participant and participant.is_active else None

    async def get_by_conversation(
        self, conversation_id: Union[str, UUID], active_only: bool = True
    ) -> List[ParticipantResponse]:
        """Get participants for a conversation."""
        query = select(self.model_class).where(
            self.model_class.conversation_id == as_uuid(conversation_id)
        )  # type: ignore
        if active_only:
            query = query.where(self.model_class.is_active.is_(True))
        query = query.order_by(self.model_class.joined_at, self.model_class.user_id)
        result = await self.db.execute(query)
        db_models = result.scalars().all()
        return [self._to_pydantic(db_model) for db_model in db_models]

    async def active_user_ids(self, conversation_id: Union[str, UUID]) -> List[str]:
        """User ids of the active participants, in join order."""
        query = (
            select(self.model_class.user_id)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.is_active.is_(True),
            )
            .order_by(self.model_class.joined_at, self.model_class.user_id)
        )
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def activate(
        self,
        conversation_id: Union[str, UUID],
        user_id: str,
        role: ParticipantRole = ParticipantRole.MEMBER,
    ) -> ParticipantResponse:
        """Add a participant, or reactivate their existing row."""
        existing = await self._get_model(conversation_id, user_id)
        if existing:
            if not existing.is_active:
                existing.is_active = True
                existing.role = role.value
                existing.joined_at = datetime.now(timezone.utc)
                await self.db.commit()
            return self._to_pydantic(existing)

        new_participant = ParticipantResponse(
            conversation_id=as_uuid(conversation_id),
            user_id=user_id,
            role=role,
            is_active=True,
            joined_at=datetime.now(timezone.utc),
        )
        return await self.create(new_participant)

    async def deactivate(self, conversation_id: Union[str, UUID], user_id: str) -> bool:
        """Mark a participant as having left. Returns False if not active."""
        stmt = (
            update(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.user_id == user_id,
                self.model_class.is_active.is_(True),
            )
            .values(is_active=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return bool(result.rowcount)

    async def set_last_read(
        self, conversation_id: Union[str, UUID], user_id: str, at: datetime
    ) -> None:
        """Move last_read_at forward; does not commit."""
        stmt = (
            update(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.user_id == user_id,
                (self.model_class.last_read_at.is_(None))
                | (self.model_class.last_read_at < at),
            )
            .values(last_read_at=at)
        )
        await self.db.execute(stmt)

    async def partners_of(self, user_id: str) -> List[str]:
        """Distinct active co-participants across the user's live conversations."""
        mine = aliased(ParticipantModel)
        theirs = aliased(ParticipantModel)
        query = (
            select(theirs.user_id)
            .join(mine, mine.conversation_id == theirs.conversation_id)
            .join(ConversationModel, ConversationModel.id == theirs.conversation_id)
            .where(
                mine.user_id == user_id,
                mine.is_active.is_(True),
                theirs.is_active.is_(True),
                theirs.user_id != user_id,
                ConversationModel.deleted_at.is_(None),
            )
            .distinct()
        )
        result = await self.db.execute(query)
        return sorted(result.scalars().all())

    async def _get_model(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> Optional[Any]:
        query = select(self.model_class).where(
            self.model_class.conversation_id == as_uuid(conversation_id),
            self.model_class.user_id == user_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    def _to_pydantic(self, db_model: Any) -> ParticipantResponse:
        """Convert SQLAlchemy ParticipantModel to Pydantic ParticipantResponse."""
        return ParticipantResponse(
            conversation_id=db_model.conversation_id,
            user_id=db_model.user_id,
            role=db_model.role,
            is_active=db_model.is_active,
            joined_at=db_model.joined_at,
            last_read_at=db_model.last_read_at,
        )

    def _from_pydantic(self, pydantic_model: ParticipantResponse) -> ParticipantModel:
        """Convert Pydantic ParticipantResponse to SQLAlchemy ParticipantModel."""
        return ParticipantModel(
            conversation_id=pydantic_model.conversation_id,
            user_id=pydantic_model.user_id,
            role=pydantic_model.role.value,
            is_active=pydantic_model.is_active,
            joined_at=pydantic_model.joined_at,
            last_read_at=pydantic_model.last_read_at,
        )
