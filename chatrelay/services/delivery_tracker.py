"""Delivery state tracking.

Pure functions over a message's delivered-to/read-by maps. Nothing here
touches the database, so everything is safe to call from any task.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional

from chatrelay.models.api.messages import MessageResponse, MessageStatus

Receipts = Dict[str, datetime]


def aggregate_status(
    message: MessageResponse, active_recipient_ids: Iterable[str]
) -> MessageStatus:
    """Compute SENT, DELIVERED or READ against the current recipient set.

    Recipients are the conversation's active participants at query time minus
    the sender, so somebody who left can never hold a message below READ.
    An empty recipient set stays SENT.
    """
    recipients = {uid for uid in active_recipient_ids if uid != message.sender_id}
    if not recipients:
        return MessageStatus.SENT
    if recipients.issubset(message.read_by.keys()):
        return MessageStatus.READ
    if recipients.issubset(message.delivered_to.keys()):
        return MessageStatus.DELIVERED
    return MessageStatus.SENT


def advance_status(current: MessageStatus, candidate: MessageStatus) -> MessageStatus:
    """Return the more advanced of two statuses; status never moves backwards."""
    return candidate if candidate.rank > current.rank else current


def apply_receipt(receipts: Receipts, user_id: str, at: datetime) -> Optional[Receipts]:
    """Record ``user_id`` at ``at`` unless an equal or newer entry exists.

    Returns a new map when the state changes and ``None`` for a no-op, which
    makes replays of the same acknowledgement idempotent.
    """
    existing = receipts.get(user_id)
    if existing is not None and at <= existing:
        return None
    updated = dict(receipts)
    updated[user_id] = at
    return updated


def unread_for(messages: Iterable[MessageResponse], user_id: str) -> int:
    """Count messages from other senders that ``user_id`` has not read."""
    return sum(
        1 for m in messages if m.sender_id != user_id and user_id not in m.read_by
    )
