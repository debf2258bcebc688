from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple, Union
from uuid import UUID, uuid4

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from chatrelay.errors import ConversationNotFound
from chatrelay.models.api.conversations import ConversationResponse, ConversationType
from chatrelay.models.api.participants import ParticipantResponse, ParticipantRole
from chatrelay.models.db.conversation_model import ConversationModel
from chatrelay.models.db.participant_model import ParticipantModel
from chatrelay.repositories.base_repository import BaseRepository, as_uuid


def direct_key_for(user_a: str, user_b: str) -> str:
    """Order-independent key identifying a DIRECT pair.

    The first id is length-prefixed so ids containing the separator cannot
    collide: ("a:b", "c") and ("a", "b:c") get different keys.
    """
    first, second = sorted((user_a, user_b))
    return f"{len(first)}:{first}:{second}"


class ConversationRepository(BaseRepository[ConversationModel, ConversationResponse]):
    """Repository for conversation operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, ConversationModel)

    async def get_by_id(
        self, id: Union[str, UUID], include_deleted: bool = False
    ) -> Optional[ConversationResponse]:
        """Get a conversation by ID with participants loaded.

        Tombstoned conversations are hidden unless ``include_deleted`` is set.
        """
        query = (
            select(self.model_class)
            .where(self.model_class.id == as_uuid(id))
            .options(selectinload(self.model_class.participants))
        )  # type: ignore
        if not include_deleted:
            query = query.where(self.model_class.deleted_at.is_(None))
        result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def get_direct(self, user_a: str, user_b: str) -> Optional[ConversationResponse]:
        """Find the live DIRECT conversation between two users."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.direct_key == direct_key_for(user_a, user_b),
                self.model_class.deleted_at.is_(None),
            )
            .options(selectinload(self.model_class.participants))
        )  # type: ignore
        result = await self.db.execute(query)
        db_model = result.scalar_one_or_none()
        return self._to_pydantic(db_model) if db_model else None

    async def create_with_participants(
        self,
        conversation_type: ConversationType,
        created_by: str,
        members: Sequence[Tuple[str, ParticipantRole]],
        name: Optional[str] = None,
    ) -> ConversationResponse:
        """Insert a conversation and its membership rows in one transaction."""
        now = datetime.now(timezone.utc)
        direct_key = None
        if conversation_type == ConversationType.DIRECT:
            direct_key = direct_key_for(members[0][0], members[1][0])

        db_model = ConversationModel(
            id=uuid4(),
            type=conversation_type.value,
            name=name,
            created_by=created_by,
            direct_key=direct_key,
            message_seq=0,
            created_at=now,
            updated_at=now,
        )
        db_model.participants = [
            ParticipantModel(
                user_id=user_id, role=role.value, is_active=True, joined_at=now
            )
            for user_id, role in members
        ]
        self.db.add(db_model)
        await self.db.commit()

        # Reload with relationships for _to_pydantic
        created = await self.get_by_id(db_model.id)
        if created is None:
            raise ConversationNotFound(db_model.id)
        return created

    async def list_for_user(
        self,
        user_id: str,
        conversation_type: Optional[ConversationType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ConversationResponse]:
        """Live conversations where ``user_id`` is active, newest activity first."""
        query = (
            select(self.model_class)
            .join(self.model_class.participants)
            .where(
                ParticipantModel.user_id == user_id,
                ParticipantModel.is_active.is_(True),
                self.model_class.deleted_at.is_(None),
            )
            .options(selectinload(self.model_class.participants))
            .order_by(self.model_class.updated_at.desc())
            .limit(limit)
            .offset(offset)
        )
        if conversation_type is not None:
            query = query.where(self.model_class.type == conversation_type.value)

        result = await self.db.execute(query)
        db_models = result.scalars().all()
        return [self._to_pydantic(db_model) for db_model in db_models]

    async def next_sequence(
        self, conversation_id: Union[str, UUID]
    ) -> Optional[Tuple[int, datetime]]:
        """Reserve the next message slot of a live conversation.

        Increments the conversation's counter and moves its last-message time
        forward (never backwards) in one statement, which row-locks only this
        conversation until the caller commits. Returns None when the
        conversation is absent or tombstoned.
        """
        model = self.model_class
        stmt = (
            update(model)
            .where(model.id == as_uuid(conversation_id), model.deleted_at.is_(None))
            .values(
                message_seq=model.message_seq + 1,
                last_message_at=func.greatest(
                    func.clock_timestamp(),
                    func.coalesce(model.last_message_at, func.clock_timestamp()),
                ),
                updated_at=func.now(),
            )
            .returning(model.message_seq, model.last_message_at)
        )
        result = await self.db.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), row[1]

    async def tombstone(self, conversation_id: Union[str, UUID]) -> bool:
        """Soft-delete a live conversation."""
        stmt = (
            update(self.model_class)
            .where(
                self.model_class.id == as_uuid(conversation_id),
                self.model_class.deleted_at.is_(None),
            )
            .values(deleted_at=func.now())
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return bool(result.rowcount)

    async def all_ids(self) -> List[UUID]:
        result = await self.db.execute(select(self.model_class.id))
        return list(result.scalars().all())

    async def active_ids(self) -> List[UUID]:
        result = await self.db.execute(
            select(self.model_class.id).where(self.model_class.deleted_at.is_(None))
        )
        return list(result.scalars().all())

    async def tombstoned_before(self, cutoff: datetime) -> List[ConversationResponse]:
        query = (
            select(self.model_class)
            .where(
                self.model_class.deleted_at.is_not(None),
                self.model_class.deleted_at < cutoff,
            )
            .options(selectinload(self.model_class.participants))
            .order_by(self.model_class.deleted_at)
        )
        result = await self.db.execute(query)
        return [self._to_pydantic(db_model) for db_model in result.scalars().all()]

    async def delete_by_ids(self, ids: Sequence[Union[str, UUID]]) -> int:
        """Hard-delete conversations; participants and messages cascade."""
        if not ids:
            return 0
        stmt = delete(self.model_class).where(
            self.model_class.id.in_([as_uuid(i) for i in ids])
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return int(result.rowcount or 0)

    def _to_pydantic(self, db_model: Any) -> ConversationResponse:
        """Convert SQLAlchemy ConversationModel to Pydantic ConversationResponse."""
        participants = [
            ParticipantResponse(
                conversation_id=p.conversation_id,
                user_id=p.user_id,
                role=p.role,
                is_active=p.is_active,
                joined_at=p.joined_at,
                last_read_at=p.last_read_at,
            )
            for p in db_model.participants
        ]
        return ConversationResponse(
            id=db_model.id,
            type=db_model.type,
            name=db_model.name,
            created_by=db_model.created_by,
            created_at=db_model.created_at,
            updated_at=db_model.updated_at,
            deleted_at=db_model.deleted_at,
            participants=participants,
            last_message_seq=db_model.message_seq or 0,
            last_message_at=db_model.last_message_at,
        )
