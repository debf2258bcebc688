from datetime import datetime, timezone
from typing import Callable
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest

from chatrelay.errors import AccessDenied
from chatrelay.models.api.messages import (
    MessageResponse,
    MessageStatus,
    ReceiptKind,
    ReceiptResult,
)
from chatrelay.realtime.registry import PresenceRegistry
from chatrelay.services.fan_out_dispatcher import FanOutDispatcher

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


class TestFanOutDispatcher:
    """Unit tests for FanOutDispatcher."""

    @pytest.fixture
    def registry(self) -> PresenceRegistry:
        return PresenceRegistry(shards=2)

    @pytest.fixture
    def dispatcher(self, mock_db: AsyncMock, registry: PresenceRegistry) -> FanOutDispatcher:
        return FanOutDispatcher(mock_db, registry=registry, push_timeout=0.05)

    @pytest.mark.asyncio
    async def test_message_reaches_every_recipient_connection(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        """Every live connection of every recipient gets the message, sender excluded."""
        alice = transport_factory()
        bob_phone, bob_laptop = transport_factory(), transport_factory()
        registry.register("alice", alice)
        registry.register("bob", bob_phone)
        registry.register("bob", bob_laptop)
        message = make_message(sender_id="alice")

        with patch.object(
            dispatcher.gate, "recipients", AsyncMock(return_value=["bob", "carol"])
        ):
            result = await dispatcher.message_created(message)

        assert result.recipients == ["bob", "carol"]
        assert result.attempted == 2
        assert result.delivered == 2
        assert result.failed == 0
        assert bob_phone.types() == ["MESSAGE"]
        assert bob_laptop.types() == ["MESSAGE"]
        assert bob_phone.sent[0]["data"]["id"] == str(message.id)
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_offline_recipient_is_not_an_error(
        self,
        dispatcher: FanOutDispatcher,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        with patch.object(dispatcher.gate, "recipients", AsyncMock(return_value=["bob"])):
            result = await dispatcher.message_created(make_message())

        assert result.attempted == 0
        assert result.failed == 0

    @pytest.mark.asyncio
    async def test_failing_connection_does_not_block_others(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        broken = transport_factory(fail=True)
        healthy = transport_factory()
        registry.register("bob", broken)
        registry.register("carol", healthy)

        with patch.object(
            dispatcher.gate, "recipients", AsyncMock(return_value=["bob", "carol"])
        ):
            result = await dispatcher.message_created(make_message())

        assert result.attempted == 2
        assert result.delivered == 1
        assert result.failed == 1
        assert healthy.types() == ["MESSAGE"]

    @pytest.mark.asyncio
    async def test_slow_connection_times_out(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        slow = transport_factory(delay=1.0)
        fast = transport_factory()
        registry.register("bob", slow)
        registry.register("carol", fast)

        with patch.object(
            dispatcher.gate, "recipients", AsyncMock(return_value=["bob", "carol"])
        ):
            result = await dispatcher.message_created(make_message())

        assert result.failed == 1
        assert slow.sent == []
        assert fast.types() == ["MESSAGE"]

    @pytest.mark.asyncio
    async def test_closed_connection_is_a_soft_failure(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        transport = transport_factory()
        connection = registry.register("bob", transport).connection
        connection.closed = True

        with patch.object(dispatcher.gate, "recipients", AsyncMock(return_value=["bob"])):
            result = await dispatcher.message_created(make_message())

        assert result.failed == 1
        assert transport.sent == []

    @pytest.mark.asyncio
    async def test_send_message_persists_then_fans_out(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        message = make_message(sender_id="alice", content="hi bob")
        bob = transport_factory()
        registry.register("bob", bob)

        with (
            patch.object(dispatcher.store, "append", AsyncMock(return_value=message)) as append,
            patch.object(dispatcher.gate, "recipients", AsyncMock(return_value=["bob"])),
        ):
            result = await dispatcher.send_message(
                message.conversation_id, "alice", "hi bob"
            )

        assert result == message
        append.assert_awaited_once()
        assert bob.sent[0]["data"]["content"] == "hi bob"

    @pytest.mark.asyncio
    async def test_rejected_send_pushes_nothing(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
    ) -> None:
        bob = transport_factory()
        registry.register("bob", bob)

        with patch.object(
            dispatcher.store, "append", AsyncMock(side_effect=AccessDenied("nope"))
        ):
            with pytest.raises(AccessDenied):
                await dispatcher.send_message(uuid4(), "mallory", "hello")

        assert bob.sent == []

    @pytest.mark.asyncio
    async def test_status_update_rebroadcasts_to_sender_and_participants(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        """The acknowledging connection is skipped; the user's other devices are not."""
        alice = transport_factory()
        bob_phone, bob_laptop = transport_factory(), transport_factory()
        carol = transport_factory()
        registry.register("alice", alice)
        origin = registry.register("bob", bob_phone).connection
        registry.register("bob", bob_laptop)
        registry.register("carol", carol)

        updated = make_message(
            sender_id="alice", delivered_to={"bob": T0}, status=MessageStatus.SENT
        )
        with (
            patch.object(
                dispatcher.store,
                "record_delivery",
                AsyncMock(return_value=ReceiptResult(message=updated, changed=True)),
            ),
            patch.object(
                dispatcher.gate,
                "active_participants",
                AsyncMock(return_value=["alice", "bob", "carol"]),
            ),
        ):
            result = await dispatcher.status_update(
                updated.id,
                "bob",
                ReceiptKind.DELIVERED,
                at=T0,
                origin_connection_id=origin.connection_id,
            )

        assert result.changed is True
        assert alice.types() == ["MESSAGE_DELIVERED"]
        assert bob_phone.sent == []
        assert bob_laptop.types() == ["MESSAGE_DELIVERED"]
        assert carol.types() == ["MESSAGE_DELIVERED"]

        data = alice.sent[0]["data"]
        assert data["message_id"] == str(updated.id)
        assert data["user_id"] == "bob"
        assert data["status_type"] == "DELIVERED"
        assert data["status"] == "SENT"

    @pytest.mark.asyncio
    async def test_duplicate_receipt_is_not_rebroadcast(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        alice = transport_factory()
        registry.register("alice", alice)
        message = make_message(sender_id="alice", read_by={"bob": T0})

        with patch.object(
            dispatcher.store,
            "record_read",
            AsyncMock(return_value=ReceiptResult(message=message, changed=False)),
        ):
            result = await dispatcher.status_update(
                message.id, "bob", ReceiptKind.READ, at=T0
            )

        assert result.changed is False
        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_read_receipt_uses_read_event(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        alice = transport_factory()
        registry.register("alice", alice)
        updated = make_message(
            sender_id="alice",
            delivered_to={"bob": T0},
            read_by={"bob": T0},
            status=MessageStatus.READ,
        )

        with (
            patch.object(
                dispatcher.store,
                "record_read",
                AsyncMock(return_value=ReceiptResult(message=updated, changed=True)),
            ),
            patch.object(
                dispatcher.gate,
                "active_participants",
                AsyncMock(return_value=["alice", "bob"]),
            ),
        ):
            await dispatcher.status_update(updated.id, "bob", ReceiptKind.READ, at=T0)

        assert alice.types() == ["MESSAGE_READ"]
        assert alice.sent[0]["data"]["status"] == "READ"

    @pytest.mark.asyncio
    async def test_leave_rebroadcasts_messages_it_settles(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        alice, bob, carol = transport_factory(), transport_factory(), transport_factory()
        registry.register("alice", alice)
        registry.register("bob", bob)
        registry.register("carol", carol)
        settled = make_message(
            sender_id="alice",
            delivered_to={"bob": T0},
            read_by={"bob": T0},
            status=MessageStatus.READ,
        )

        with (
            patch.object(dispatcher.gate, "remove_participant", AsyncMock()) as remove,
            patch.object(
                dispatcher.store, "settle_statuses", AsyncMock(return_value=[settled])
            ),
            patch.object(
                dispatcher.gate,
                "active_participants",
                AsyncMock(return_value=["alice", "bob"]),
            ),
        ):
            advanced = await dispatcher.participant_removed(
                settled.conversation_id, "carol", "carol"
            )

        assert advanced == [settled]
        remove.assert_awaited_once_with(settled.conversation_id, "carol", "carol")
        assert alice.types() == ["MESSAGE_READ"]
        assert bob.types() == ["MESSAGE_READ"]
        assert carol.sent == []

        data = alice.sent[0]["data"]
        assert data["message_id"] == str(settled.id)
        assert data["user_id"] == "carol"
        assert data["status"] == "READ"

    @pytest.mark.asyncio
    async def test_leave_with_nothing_settled_is_silent(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
    ) -> None:
        alice = transport_factory()
        registry.register("alice", alice)
        conversation_id = uuid4()

        with (
            patch.object(dispatcher.gate, "remove_participant", AsyncMock()),
            patch.object(dispatcher.store, "settle_statuses", AsyncMock(return_value=[])),
        ):
            assert await dispatcher.participant_removed(conversation_id, "bob", "bob") == []

        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_rejected_removal_settles_nothing(
        self, dispatcher: FanOutDispatcher
    ) -> None:
        with (
            patch.object(
                dispatcher.gate,
                "remove_participant",
                AsyncMock(side_effect=AccessDenied("members cannot remove others")),
            ),
            patch.object(dispatcher.store, "settle_statuses", AsyncMock()) as settle,
        ):
            with pytest.raises(AccessDenied):
                await dispatcher.participant_removed(uuid4(), "bob", "carol")

        settle.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conversation_read_broadcasts_once(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
        make_message: Callable[..., MessageResponse],
    ) -> None:
        conversation_id = uuid4()
        alice = transport_factory()
        registry.register("alice", alice)
        changed = [
            make_message(
                conversation_id=conversation_id,
                sender_id="alice",
                seq=seq,
                read_by={"bob": T0},
                status=MessageStatus.READ,
            )
            for seq in (1, 2)
        ]

        with (
            patch.object(
                dispatcher.store,
                "mark_conversation_read",
                AsyncMock(return_value=changed),
            ),
            patch.object(
                dispatcher.gate,
                "active_participants",
                AsyncMock(return_value=["alice", "bob"]),
            ),
        ):
            result = await dispatcher.conversation_read(conversation_id, "bob", T0)

        assert result == changed
        assert alice.types() == ["CONVERSATION_READ"]
        data = alice.sent[0]["data"]
        assert data["user_id"] == "bob"
        assert data["message_ids"] == [str(m.id) for m in changed]
        assert data["statuses"] == {str(m.id): "READ" for m in changed}

    @pytest.mark.asyncio
    async def test_conversation_read_with_nothing_unread_is_silent(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
    ) -> None:
        alice = transport_factory()
        registry.register("alice", alice)

        with patch.object(
            dispatcher.store, "mark_conversation_read", AsyncMock(return_value=[])
        ):
            assert await dispatcher.conversation_read(uuid4(), "bob") == []

        assert alice.sent == []

    @pytest.mark.asyncio
    async def test_presence_goes_to_partners(
        self,
        dispatcher: FanOutDispatcher,
        registry: PresenceRegistry,
        transport_factory: Callable,
    ) -> None:
        bob = transport_factory()
        stranger = transport_factory()
        registry.register("bob", bob)
        registry.register("zed", stranger)

        with patch.object(dispatcher.gate, "partners_of", AsyncMock(return_value=["bob"])):
            await dispatcher.presence_changed("alice", False)

        assert bob.sent == [
            {"type": "PRESENCE", "data": {"user_id": "alice", "online": False}}
        ]
        assert stranger.sent == []
