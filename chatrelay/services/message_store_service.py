import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import MAX_MESSAGE_LENGTH
from chatrelay.errors import ConversationNotFound, MessageNotFound, ValidationError
from chatrelay.models.api.messages import (
    MessageResponse,
    MessageType,
    ReceiptKind,
    ReceiptResult,
)
from chatrelay.repositories.message_repository import MessageRepository
from chatrelay.repositories.participant_repository import ParticipantRepository
from chatrelay.services.delivery_tracker import (
    advance_status,
    aggregate_status,
    apply_receipt,
)
from chatrelay.services.membership_gate import MembershipGate

logger = logging.getLogger(__name__)


def _utc(at: Optional[datetime]) -> datetime:
    """Receipt time in UTC, never later than now."""
    now = datetime.now(timezone.utc)
    if at is None:
        return now
    if at.tzinfo is None:
        at = at.replace(tzinfo=timezone.utc)
    return min(at, now)


def _with_current_status(
    message: MessageResponse, active_user_ids: Sequence[str]
) -> MessageResponse:
    status = advance_status(message.status, aggregate_status(message, active_user_ids))
    if status == message.status:
        return message
    return message.model_copy(update={"status": status})


class MessageStoreService:
    """Append-only message log per conversation with receipt tracking."""

    def __init__(self, db: AsyncSession, gate: Optional[MembershipGate] = None):
        self.db = db
        self.gate = gate or MembershipGate(db)
        self.message_repo = MessageRepository(db)
        self.participant_repo = ParticipantRepository(db)

    async def append(
        self,
        conversation_id: Union[str, UUID],
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> MessageResponse:
        """
        Persist a new message:
        1. Validate the content
        2. Check the sender is an active participant of a live conversation
        3. Assign the next per-conversation sequence and store the message
        """
        self._validate_content(content)
        await self.gate.assert_can_participate(conversation_id, sender_id)

        message = await self.message_repo.append(
            conversation_id, sender_id, content, message_type
        )
        if message is None:
            # Tombstoned between the membership check and the insert
            raise ConversationNotFound(conversation_id)

        logger.debug(
            "Stored message %s seq=%d in conversation %s",
            message.id,
            message.seq,
            conversation_id,
        )
        return message

    async def list_since(
        self,
        conversation_id: Union[str, UUID],
        reader_id: str,
        after_seq: int = 0,
        limit: int = 100,
        before_seq: Optional[int] = None,
    ) -> List[MessageResponse]:
        """
        Ordered messages for replay. Pass the last seen ``seq`` back in as
        ``after_seq`` to resume without gaps or duplicates; ``before_seq``
        pages backwards through history instead.
        """
        if limit <= 0 or limit > 1000:
            raise ValidationError({"limit": "Limit must be between 1 and 1000"})
        if after_seq < 0:
            raise ValidationError({"after": "Cursor must be non-negative"})

        await self.gate.assert_can_participate(conversation_id, reader_id)

        if before_seq is not None:
            messages = await self.message_repo.list_before(
                conversation_id, before_seq, limit=limit
            )
        else:
            messages = await self.message_repo.list_since(
                conversation_id, after_seq=after_seq, limit=limit
            )

        # Status is served against the participants active right now
        active = await self.participant_repo.active_user_ids(conversation_id)
        return [_with_current_status(message, active) for message in messages]

    async def record_delivery(
        self,
        message_id: Union[str, UUID],
        recipient_id: str,
        at: Optional[datetime] = None,
    ) -> ReceiptResult:
        return await self._record(message_id, recipient_id, ReceiptKind.DELIVERED, at)

    async def record_read(
        self,
        message_id: Union[str, UUID],
        recipient_id: str,
        at: Optional[datetime] = None,
    ) -> ReceiptResult:
        return await self._record(message_id, recipient_id, ReceiptKind.READ, at)

    async def mark_conversation_read(
        self,
        conversation_id: Union[str, UUID],
        user_id: str,
        at: Optional[datetime] = None,
    ) -> List[MessageResponse]:
        """Mark every unread message from others as read. Returns the changed ones."""
        at = _utc(at)
        await self.gate.assert_can_participate(conversation_id, user_id)

        db_models = await self.message_repo.unread_for_update(conversation_id, user_id)
        active = await self.participant_repo.active_user_ids(conversation_id)

        changed = []
        for db_model in db_models:
            message = self.message_repo.as_response(db_model)
            updated = self._stage(db_model, message, user_id, ReceiptKind.READ, at, active)
            if updated is not None:
                changed.append(updated)

        await self.participant_repo.set_last_read(conversation_id, user_id, at)
        await self.message_repo.commit()

        logger.debug(
            "User %s read %d messages in conversation %s",
            user_id,
            len(changed),
            conversation_id,
        )
        return changed

    async def settle_statuses(
        self, conversation_id: Union[str, UUID]
    ) -> List[MessageResponse]:
        """Recompute stored status after the participant set changed.

        A departed participant can no longer hold a message below READ, so
        messages that now qualify are advanced and persisted. Returns the
        messages whose status moved.
        """
        db_models = await self.message_repo.unsettled_for_update(conversation_id)
        active = await self.participant_repo.active_user_ids(conversation_id)

        changed = []
        for db_model in db_models:
            message = self.message_repo.as_response(db_model)
            current = _with_current_status(message, active)
            if current.status != message.status:
                self.message_repo.apply_state(
                    db_model, current.delivered_to, current.read_by, current.status
                )
                changed.append(current)

        if changed:
            await self.message_repo.commit()
        else:
            await self.message_repo.rollback()
        return changed

    async def unread_count(self, conversation_id: Union[str, UUID], user_id: str) -> int:
        await self.gate.assert_can_participate(conversation_id, user_id)
        return await self.message_repo.count_unread(conversation_id, user_id)

    async def _record(
        self,
        message_id: Union[str, UUID],
        recipient_id: str,
        kind: ReceiptKind,
        at: Optional[datetime],
    ) -> ReceiptResult:
        """Apply one acknowledgement under a row lock on the message.

        Unknown message ids raise MessageNotFound. Acknowledgements from the
        sender or from someone who is no longer an active participant are
        accepted and ignored.
        """
        at = _utc(at)
        db_model = await self.message_repo.get_for_update(message_id)
        if db_model is None:
            await self.message_repo.rollback()
            raise MessageNotFound(message_id)

        message = self.message_repo.as_response(db_model)
        if recipient_id == message.sender_id:
            await self.message_repo.rollback()
            return ReceiptResult(message=message, changed=False)

        active = await self.participant_repo.active_user_ids(message.conversation_id)
        if recipient_id not in active:
            await self.message_repo.rollback()
            logger.debug(
                "Ignoring %s receipt from non-participant %s for message %s",
                kind.value,
                recipient_id,
                message_id,
            )
            return ReceiptResult(message=message, changed=False)

        updated = self._stage(db_model, message, recipient_id, kind, at, active)
        if updated is None:
            await self.message_repo.rollback()
            return ReceiptResult(message=message, changed=False)

        await self.message_repo.commit()
        return ReceiptResult(message=updated, changed=True)

    def _stage(
        self,
        db_model: Any,
        message: MessageResponse,
        recipient_id: str,
        kind: ReceiptKind,
        at: datetime,
        active_user_ids: Sequence[str],
    ) -> Optional[MessageResponse]:
        """Compute the post-receipt state and stage it on ``db_model``.

        Returns the updated message, or None when nothing would change.
        """
        delivered_to = message.delivered_to
        read_by = message.read_by

        if kind == ReceiptKind.DELIVERED:
            delivered_to = apply_receipt(delivered_to, recipient_id, at) or delivered_to
        else:
            # Reading implies delivery
            if recipient_id not in delivered_to:
                delivered_to = apply_receipt(delivered_to, recipient_id, at) or delivered_to
            read_by = apply_receipt(read_by, recipient_id, at) or read_by

        updated = message.model_copy(
            update={"delivered_to": delivered_to, "read_by": read_by}
        )
        status = advance_status(
            message.status, aggregate_status(updated, active_user_ids)
        )
        updated = updated.model_copy(update={"status": status})

        if (
            delivered_to == message.delivered_to
            and read_by == message.read_by
            and status == message.status
        ):
            return None

        self.message_repo.apply_state(db_model, delivered_to, read_by, status)
        return updated

    def _validate_content(self, content: str) -> None:
        if content is None or not content.strip():
            raise ValidationError({"content": "Message content cannot be empty"})
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                {"content": f"Message content exceeds {MAX_MESSAGE_LENGTH} characters"}
            )
