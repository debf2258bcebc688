import logging
from typing import List, Optional, Sequence, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.errors import (
    AccessDenied,
    ConversationNotFound,
    OperationNotPermitted,
    ValidationError,
)
from chatrelay.models.api.conversations import ConversationResponse, ConversationType
from chatrelay.models.api.participants import ParticipantResponse, ParticipantRole
from chatrelay.repositories.conversation_repository import ConversationRepository
from chatrelay.repositories.participant_repository import ParticipantRepository

logger = logging.getLogger(__name__)


class MembershipGate:
    """Decides who may send to, read from and change a conversation."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.conversation_repo = ConversationRepository(db)
        self.participant_repo = ParticipantRepository(db)

    async def require_conversation(
        self, conversation_id: Union[str, UUID]
    ) -> ConversationResponse:
        """Load a live conversation or raise ConversationNotFound."""
        conversation = await self.conversation_repo.get_by_id(conversation_id)
        if not conversation:
            raise ConversationNotFound(conversation_id)
        return conversation

    async def assert_can_participate(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> ParticipantResponse:
        """Raise AccessDenied unless ``user_id`` is an active participant."""
        await self.require_conversation(conversation_id)
        participant = await self.participant_repo.get_active(conversation_id, user_id)
        if not participant:
            raise AccessDenied(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        return participant

    async def active_participants(self, conversation_id: Union[str, UUID]) -> List[str]:
        return await self.participant_repo.active_user_ids(conversation_id)

    async def recipients(
        self, conversation_id: Union[str, UUID], sender_id: str
    ) -> List[str]:
        """Active participants other than the sender."""
        return [
            user_id
            for user_id in await self.active_participants(conversation_id)
            if user_id != sender_id
        ]

    async def create_direct_conversation(
        self, user_id: str, other_user_id: str
    ) -> ConversationResponse:
        """Return the live DIRECT conversation for the pair, creating it if needed."""
        if user_id == other_user_id:
            raise ValidationError({"user_id": "Cannot open a direct conversation with yourself"})

        existing = await self.conversation_repo.get_direct(user_id, other_user_id)
        if existing:
            return existing

        try:
            conversation = await self.conversation_repo.create_with_participants(
                ConversationType.DIRECT,
                created_by=user_id,
                members=[
                    (user_id, ParticipantRole.MEMBER),
                    (other_user_id, ParticipantRole.MEMBER),
                ],
            )
        except IntegrityError:
            # Lost the race against a concurrent create for the same pair
            await self.db.rollback()
            existing = await self.conversation_repo.get_direct(user_id, other_user_id)
            if not existing:
                raise
            return existing

        logger.info(
            "Created direct conversation %s between %s and %s",
            conversation.id,
            user_id,
            other_user_id,
        )
        return conversation

    async def create_group_conversation(
        self, creator_id: str, name: str, participant_ids: Sequence[str]
    ) -> ConversationResponse:
        """Create a GROUP with the creator as OWNER."""
        if not name or not name.strip():
            raise ValidationError({"name": "Group name is required"})

        members = [(creator_id, ParticipantRole.OWNER)]
        seen = {creator_id}
        for user_id in participant_ids:
            if user_id not in seen:
                seen.add(user_id)
                members.append((user_id, ParticipantRole.MEMBER))
        if len(members) < 2:
            raise ValidationError(
                {"participant_ids": "A group needs at least one other participant"}
            )

        conversation = await self.conversation_repo.create_with_participants(
            ConversationType.GROUP,
            created_by=creator_id,
            members=members,
            name=name.strip(),
        )
        logger.info(
            "Created group %s by %s with %d participants",
            conversation.id,
            creator_id,
            len(members),
        )
        return conversation

    async def list_conversations(
        self,
        user_id: str,
        conversation_type: Optional[ConversationType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ConversationResponse]:
        if limit <= 0 or limit > 1000:
            raise ValidationError({"limit": "Limit must be between 1 and 1000"})
        if offset < 0:
            raise ValidationError({"offset": "Offset must be non-negative"})
        return await self.conversation_repo.list_for_user(
            user_id, conversation_type, limit=limit, offset=offset
        )

    async def get_conversation(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> ConversationResponse:
        conversation = await self.require_conversation(conversation_id)
        if user_id not in conversation.active_user_ids:
            raise AccessDenied(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        return conversation

    async def add_participant(
        self, conversation_id: Union[str, UUID], requester_id: str, user_id: str
    ) -> ParticipantResponse:
        conversation = await self.require_conversation(conversation_id)
        if conversation.type == ConversationType.DIRECT:
            raise OperationNotPermitted("Direct conversations have fixed participants")

        requester = await self._require_active(conversation_id, requester_id)
        if not requester.can_manage_participants:
            raise AccessDenied("Only owners and admins can add participants")

        participant = await self.participant_repo.activate(conversation_id, user_id)
        logger.info(
            "User %s added %s to conversation %s", requester_id, user_id, conversation_id
        )
        return participant

    async def remove_participant(
        self, conversation_id: Union[str, UUID], requester_id: str, user_id: str
    ) -> None:
        conversation = await self.require_conversation(conversation_id)
        if conversation.type == ConversationType.DIRECT:
            raise OperationNotPermitted("Direct conversations have fixed participants")

        requester = await self._require_active(conversation_id, requester_id)
        if requester_id != user_id:
            if not requester.can_manage_participants:
                raise AccessDenied("Only owners and admins can remove other participants")
            target = await self.participant_repo.get_active(conversation_id, user_id)
            if not target:
                raise AccessDenied(
                    f"User {user_id} is not a participant of conversation {conversation_id}"
                )
            if (
                target.role == ParticipantRole.OWNER
                and requester.role != ParticipantRole.OWNER
            ):
                raise AccessDenied("Admins cannot remove the group owner")

        await self.participant_repo.deactivate(conversation_id, user_id)
        logger.info(
            "User %s removed %s from conversation %s",
            requester_id,
            user_id,
            conversation_id,
        )

    async def tombstone_conversation(
        self, conversation_id: Union[str, UUID], requester_id: str
    ) -> None:
        """Soft-delete: GROUP owners only, any participant of a DIRECT."""
        conversation = await self.require_conversation(conversation_id)
        requester = await self._require_active(conversation_id, requester_id)
        if (
            conversation.type == ConversationType.GROUP
            and requester.role != ParticipantRole.OWNER
        ):
            raise AccessDenied("Only group owners can delete groups")

        if not await self.conversation_repo.tombstone(conversation_id):
            raise ConversationNotFound(conversation_id)
        logger.info("Conversation %s tombstoned by %s", conversation_id, requester_id)

    async def partners_of(self, user_id: str) -> List[str]:
        return await self.participant_repo.partners_of(user_id)

    async def _require_active(
        self, conversation_id: Union[str, UUID], user_id: str
    ) -> ParticipantResponse:
        participant = await self.participant_repo.get_active(conversation_id, user_id)
        if not participant:
            raise AccessDenied(
                f"User {user_id} is not a participant of conversation {conversation_id}"
            )
        return participant
