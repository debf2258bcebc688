from datetime import datetime, timedelta, timezone
from typing import Callable

from chatrelay.models.api.messages import MessageResponse, MessageStatus
from chatrelay.services.delivery_tracker import (
    advance_status,
    aggregate_status,
    apply_receipt,
    unread_for,
)

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestAggregateStatus:
    """Aggregate status over the active recipient set."""

    def test_sent_until_everyone_has_it(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(sender_id="alice", delivered_to={"bob": T0})
        assert aggregate_status(message, ["alice", "bob", "carol"]) == MessageStatus.SENT

    def test_delivered_when_all_recipients_delivered(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(delivered_to={"bob": T0, "carol": T0})
        assert (
            aggregate_status(message, ["alice", "bob", "carol"])
            == MessageStatus.DELIVERED
        )

    def test_read_when_all_recipients_read(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(
            delivered_to={"bob": T0, "carol": T0}, read_by={"bob": T0, "carol": T0}
        )
        assert aggregate_status(message, ["alice", "bob", "carol"]) == MessageStatus.READ

    def test_partial_read_is_delivered(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(
            delivered_to={"bob": T0, "carol": T0}, read_by={"bob": T0}
        )
        assert (
            aggregate_status(message, ["alice", "bob", "carol"])
            == MessageStatus.DELIVERED
        )

    def test_sender_is_never_a_recipient(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(sender_id="alice", read_by={"bob": T0})
        assert aggregate_status(message, ["alice", "bob"]) == MessageStatus.READ

    def test_empty_recipient_set_stays_sent(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        message = make_message(sender_id="alice")
        assert aggregate_status(message, ["alice"]) == MessageStatus.SENT
        assert aggregate_status(message, []) == MessageStatus.SENT

    def test_departed_participant_no_longer_counts(
        self, make_message: Callable[..., MessageResponse]
    ) -> None:
        """Receipts from users who left do not hold the status back or forward."""
        message = make_message(read_by={"bob": T0})
        # carol left, only bob remains
        assert aggregate_status(message, ["alice", "bob"]) == MessageStatus.READ


class TestAdvanceStatus:
    def test_never_regresses(self) -> None:
        assert advance_status(MessageStatus.READ, MessageStatus.SENT) == MessageStatus.READ
        assert (
            advance_status(MessageStatus.READ, MessageStatus.DELIVERED)
            == MessageStatus.READ
        )

    def test_moves_forward(self) -> None:
        assert (
            advance_status(MessageStatus.SENT, MessageStatus.DELIVERED)
            == MessageStatus.DELIVERED
        )
        assert advance_status(MessageStatus.PENDING, MessageStatus.SENT) == MessageStatus.SENT


class TestApplyReceipt:
    def test_first_receipt_is_recorded(self) -> None:
        assert apply_receipt({}, "bob", T0) == {"bob": T0}

    def test_same_timestamp_is_noop(self) -> None:
        assert apply_receipt({"bob": T0}, "bob", T0) is None

    def test_older_timestamp_is_noop(self) -> None:
        assert apply_receipt({"bob": T0}, "bob", T0 - timedelta(seconds=1)) is None

    def test_newer_timestamp_wins(self) -> None:
        later = T0 + timedelta(seconds=5)
        assert apply_receipt({"bob": T0}, "bob", later) == {"bob": later}

    def test_input_is_not_mutated(self) -> None:
        receipts = {"bob": T0}
        apply_receipt(receipts, "carol", T0)
        assert receipts == {"bob": T0}

    def test_applying_twice_equals_applying_once(self) -> None:
        once = apply_receipt({}, "bob", T0)
        assert once is not None
        assert apply_receipt(once, "bob", T0) is None


def test_unread_for_counts_only_other_senders(
    make_message: Callable[..., MessageResponse],
) -> None:
    messages = [
        make_message(sender_id="alice"),
        make_message(sender_id="bob"),
        make_message(sender_id="carol", read_by={"bob": T0}),
        make_message(sender_id="carol"),
    ]
    assert unread_for(messages, "bob") == 2
