import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Union
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from chatrelay.config import PUSH_TIMEOUT_SECONDS
from chatrelay.errors import TransientDeliveryFailure
from chatrelay.models.api.messages import (
    MessageResponse,
    MessageType,
    ReceiptKind,
    ReceiptResult,
)
from chatrelay.models.api.realtime import (
    RECEIPT_EVENTS,
    ConversationReadUpdate,
    EventType,
    MessageStatusUpdate,
    PresenceUpdate,
    frame,
)
from chatrelay.realtime import presence_registry
from chatrelay.realtime.registry import Connection, PresenceRegistry
from chatrelay.services.membership_gate import MembershipGate
from chatrelay.services.message_store_service import MessageStoreService

logger = logging.getLogger(__name__)


class FanOutResult(NamedTuple):
    """What one broadcast did."""

    recipients: List[str]
    attempted: int
    delivered: int
    failed: int


class FanOutDispatcher:
    """Pushes new messages and receipt updates to live participant connections.

    Persistence is the durability guarantee; pushes are best effort. Nothing
    is queued or retried here, and clients that miss a push resync with
    ``list_since`` after reconnecting.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[PresenceRegistry] = None,
        push_timeout: float = PUSH_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.registry = registry if registry is not None else presence_registry
        self.push_timeout = push_timeout
        self.gate = MembershipGate(db)
        self.store = MessageStoreService(db, self.gate)

    async def send_message(
        self,
        conversation_id: Union[str, UUID],
        sender_id: str,
        content: str,
        message_type: MessageType = MessageType.TEXT,
    ) -> MessageResponse:
        """
        Full send path:
        1. Authorize and persist through the message store
        2. Fan the stored message out to the other participants
        3. Return the stored message as the sender's acknowledgement
        """
        message = await self.store.append(
            conversation_id, sender_id, content, message_type
        )
        await self.message_created(message)
        return message

    async def message_created(self, message: MessageResponse) -> FanOutResult:
        """Push ``MESSAGE`` to every live connection of every recipient.

        The sender is never a target; their acknowledgement travels on the
        send path.
        """
        recipients = await self.gate.recipients(
            message.conversation_id, message.sender_id
        )
        result = await self._push_to_users(recipients, frame(EventType.MESSAGE, message))
        logger.debug(
            "Fan-out of message %s: %d recipients, %d/%d pushes delivered",
            message.id,
            len(recipients),
            result.delivered,
            result.attempted,
        )
        return result

    async def status_update(
        self,
        message_id: Union[str, UUID],
        recipient_id: str,
        kind: ReceiptKind,
        at: Optional[datetime] = None,
        origin_connection_id: Optional[str] = None,
    ) -> ReceiptResult:
        """Apply a delivered/read acknowledgement and re-broadcast the outcome.

        The update goes to the sender and every other active participant,
        skipping only the connection the acknowledgement came from.
        Duplicate or stale acknowledgements change nothing and are not
        re-broadcast.
        """
        if kind == ReceiptKind.DELIVERED:
            result = await self.store.record_delivery(message_id, recipient_id, at)
        else:
            result = await self.store.record_read(message_id, recipient_id, at)

        if not result.changed:
            return result

        message = result.message
        receipts = message.delivered_to if kind == ReceiptKind.DELIVERED else message.read_by
        update = MessageStatusUpdate(
            message_id=message.id,
            conversation_id=message.conversation_id,
            user_id=recipient_id,
            status_type=kind,
            status=message.status,
            timestamp=receipts[recipient_id],
        )

        participants = await self.gate.active_participants(message.conversation_id)
        targets = _ordered_unique([message.sender_id], participants)
        await self._push_to_users(
            targets,
            frame(RECEIPT_EVENTS[kind], update),
            exclude_connection_id=origin_connection_id,
        )
        return result

    async def conversation_read(
        self,
        conversation_id: Union[str, UUID],
        user_id: str,
        at: Optional[datetime] = None,
        origin_connection_id: Optional[str] = None,
    ) -> List[MessageResponse]:
        """Bulk read receipt for a whole conversation."""
        changed = await self.store.mark_conversation_read(conversation_id, user_id, at)
        if not changed:
            return changed

        update = ConversationReadUpdate(
            conversation_id=changed[0].conversation_id,
            user_id=user_id,
            message_ids=[m.id for m in changed],
            statuses={str(m.id): m.status for m in changed},
            timestamp=changed[-1].read_by[user_id],
        )
        participants = await self.gate.active_participants(conversation_id)
        senders = [m.sender_id for m in changed]
        await self._push_to_users(
            _ordered_unique(senders, participants),
            frame(EventType.CONVERSATION_READ, update),
            exclude_connection_id=origin_connection_id,
        )
        return changed

    async def participant_removed(
        self,
        conversation_id: Union[str, UUID],
        requester_id: str,
        user_id: str,
    ) -> List[MessageResponse]:
        """Remove a participant and announce messages that advanced as a result.

        Once ``user_id`` is gone their missing receipts stop counting, so
        messages may move to DELIVERED or READ. Each one is re-broadcast with
        ``user_id`` as the user whose departure settled it.
        """
        await self.gate.remove_participant(conversation_id, requester_id, user_id)
        advanced = await self.store.settle_statuses(conversation_id)
        if not advanced:
            return advanced

        now = datetime.now(timezone.utc)
        participants = await self.gate.active_participants(conversation_id)
        for message in advanced:
            kind = ReceiptKind(message.status.value)
            update = MessageStatusUpdate(
                message_id=message.id,
                conversation_id=message.conversation_id,
                user_id=user_id,
                status_type=kind,
                status=message.status,
                timestamp=now,
            )
            await self._push_to_users(
                _ordered_unique([message.sender_id], participants),
                frame(RECEIPT_EVENTS[kind], update),
            )
        logger.info(
            "%d messages in conversation %s advanced after %s left",
            len(advanced),
            conversation_id,
            user_id,
        )
        return advanced

    async def presence_changed(self, user_id: str, online: bool) -> FanOutResult:
        """Tell a user's conversation partners they came online or went offline."""
        partners = await self.gate.partners_of(user_id)
        return await self._push_to_users(
            partners,
            frame(EventType.PRESENCE, PresenceUpdate(user_id=user_id, online=online)),
        )

    async def _push_to_users(
        self,
        user_ids: Iterable[str],
        payload: Dict[str, Any],
        exclude_connection_id: Optional[str] = None,
    ) -> FanOutResult:
        """Push one payload to users, finishing each user before the next."""
        recipients = list(user_ids)
        attempted = delivered = failed = 0
        for user_id in recipients:
            for connection in self.registry.live_connections(user_id):
                if connection.connection_id == exclude_connection_id:
                    continue
                attempted += 1
                if await self._push(connection, payload):
                    delivered += 1
                else:
                    failed += 1
        return FanOutResult(recipients, attempted, delivered, failed)

    async def _push(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        """One bounded push. Failures are logged and reported as False."""
        try:
            await asyncio.wait_for(connection.push(payload), timeout=self.push_timeout)
            return True
        except asyncio.TimeoutError:
            failure = TransientDeliveryFailure(connection.connection_id, "timed out")
        except Exception as e:
            failure = TransientDeliveryFailure(connection.connection_id, repr(e))
        logger.warning(
            "%s (user %s, event %s)", failure.detail, connection.user_id, payload["type"]
        )
        return False


def _ordered_unique(first: Iterable[str], rest: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for user_id in list(first) + list(rest):
        if user_id not in seen:
            seen.add(user_id)
            ordered.append(user_id)
    return ordered
