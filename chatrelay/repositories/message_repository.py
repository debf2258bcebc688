from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from chatrelay.models.api.messages import MessageResponse, MessageStatus, MessageType
from chatrelay.models.db.message_model import MessageModel
from chatrelay.repositories.base_repository import BaseRepository, as_uuid
from chatrelay.repositories.conversation_repository import ConversationRepository


def _dump_receipts(receipts: Dict[str, datetime]) -> Dict[str, str]:
    return {user_id: at.isoformat() for user_id, at in receipts.items()}


class MessageRepository(BaseRepository[MessageModel, MessageResponse]):
    """Repository for message operations."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, MessageModel)
        self.conversation_repo = ConversationRepository(db)

    async def append(
        self,
        conversation_id: Union[str, UUID],
        sender_id: str,
        content: str,
        message_type: MessageType,
    ) -> Optional[MessageResponse]:
        """Persist a message at the conversation's next sequence number.

        Returns None (and writes nothing) when the conversation is absent or
        tombstoned.
        """
        slot = await self.conversation_repo.next_sequence(conversation_id)
        if slot is None:
            await self.db.rollback()
            return None
        seq, timestamp = slot

        db_model = MessageModel(
            id=uuid4(),
            conversation_id=as_uuid(conversation_id),
            seq=seq,
            sender_id=sender_id,
            content=content,
            type=message_type.value,
            status=MessageStatus.SENT.value,
            delivered_to={},
            read_by={},
            message_timestamp=timestamp,
        )
        self.db.add(db_model)
        await self.db.commit()
        await self.db.refresh(db_model)
        return self._to_pydantic(db_model)

    async def list_since(
        self,
        conversation_id: Union[str, UUID],
        after_seq: int = 0,
        limit: int = 100,
    ) -> List[MessageResponse]:
        """Messages with ``seq > after_seq`` in ascending order."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.seq > after_seq,
            )
            .order_by(self.model_class.seq)
            .limit(limit)
        )  # type: ignore
        result = await self.db.execute(query)
        return [self._to_pydantic(db_model) for db_model in result.scalars().all()]

    async def list_before(
        self,
        conversation_id: Union[str, UUID],
        before_seq: int,
        limit: int = 100,
    ) -> List[MessageResponse]:
        """The ``limit`` messages preceding ``before_seq``, ascending."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.seq < before_seq,
            )
            .order_by(self.model_class.seq.desc())
            .limit(limit)
        )  # type: ignore
        result = await self.db.execute(query)
        db_models = list(result.scalars().all())
        db_models.reverse()
        return [self._to_pydantic(db_model) for db_model in db_models]

    async def get_for_update(self, message_id: Union[str, UUID]) -> Optional[Any]:
        """Load a message row and lock it until the next commit."""
        query = (
            select(self.model_class)
            .where(self.model_class.id == as_uuid(message_id))
            .with_for_update()
        )  # type: ignore
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def unread_for_update(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> List[Any]:
        """Lock every message from other senders that ``user_id`` has not read."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.sender_id != user_id,
                ~self.model_class.read_by.has_key(user_id),
            )
            .order_by(self.model_class.seq)
            .with_for_update()
        )  # type: ignore
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def unsettled_for_update(self, conversation_id: Union[str, UUID]) -> List[Any]:
        """Lock every message of a conversation that is not yet READ."""
        query = (
            select(self.model_class)
            .where(
                self.model_class.conversation_id == as_uuid(conversation_id),
                self.model_class.status != MessageStatus.READ.value,
            )
            .order_by(self.model_class.seq)
            .with_for_update()
        )  # type: ignore
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def count_unread(self, conversation_id: Union[str, UUID], user_id: str) -> int:
        query = select(func.count(self.model_class.id)).where(
            self.model_class.conversation_id == as_uuid(conversation_id),
            self.model_class.sender_id != user_id,
            ~self.model_class.read_by.has_key(user_id),
        )
        result = await self.db.execute(query)
        return int(result.scalar() or 0)

    def apply_state(
        self,
        db_model: Any,
        delivered_to: Dict[str, datetime],
        read_by: Dict[str, datetime],
        status: MessageStatus,
    ) -> None:
        """Stage new receipt maps and status on a locked row.

        Assigns fresh dicts so SQLAlchemy sees the JSONB columns as changed.
        """
        db_model.delivered_to = _dump_receipts(delivered_to)
        db_model.read_by = _dump_receipts(read_by)
        db_model.status = status.value

    def as_response(self, db_model: Any) -> MessageResponse:
        return self._to_pydantic(db_model)

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    def _to_pydantic(self, db_model: Any) -> MessageResponse:
        """Convert SQLAlchemy MessageModel to Pydantic MessageResponse."""
        return MessageResponse(
            id=db_model.id,
            conversation_id=db_model.conversation_id,
            seq=db_model.seq,
            sender_id=db_model.sender_id,
            content=db_model.content,
            type=db_model.type,
            status=db_model.status,
            delivered_to=db_model.delivered_to or {},
            read_by=db_model.read_by or {},
            message_timestamp=db_model.message_timestamp,
            created_at=db_model.created_at,
            updated_at=db_model.updated_at,
        )
