import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from dotenv import load_dotenv
from fastapi.testclient import TestClient

from chatrelay.auth import create_access_token
from chatrelay.database import get_db
from chatrelay.main import app
from chatrelay.models.api.conversations import ConversationResponse, ConversationType
from chatrelay.models.api.messages import MessageResponse, MessageStatus, MessageType
from chatrelay.models.api.participants import ParticipantResponse, ParticipantRole
from chatrelay.models.db.message_model import MessageModel
from chatrelay.realtime.registry import ConnectionTransport

load_dotenv()


class RecordingTransport(ConnectionTransport):
    """In-memory transport that records pushed frames."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.sent: List[Dict[str, Any]] = []
        self.fail = fail
        self.delay = delay
        self.closed_with: Optional[int] = None

    async def send_json(self, payload: Dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("socket gone")
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> List[str]:
        return [frame["type"] for frame in self.sent]


@pytest.fixture
def transport_factory() -> Callable[..., RecordingTransport]:
    return RecordingTransport


@pytest.fixture(scope="function")
def mock_db() -> Generator[AsyncMock, None, None]:
    """Create a mock database session for unit tests."""
    mock_session = AsyncMock()
    mock_session.commit = AsyncMock()
    mock_session.rollback = AsyncMock()
    mock_session.close = AsyncMock()
    mock_session.refresh = AsyncMock()
    mock_session.execute = AsyncMock()
    mock_session.add = MagicMock()  # add is sync, not async

    yield mock_session


@pytest.fixture
def client() -> Generator[TestClient, Any, None]:
    """Test client whose requests never reach a real database."""
    session = AsyncMock()
    session.add = MagicMock()

    async def override_get_db() -> AsyncGenerator[AsyncMock, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def auth_headers() -> Callable[[str], Dict[str, str]]:
    """Bearer headers for a user id."""

    def make(user_id: str = "alice") -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return make


@pytest.fixture
def make_message() -> Callable[..., MessageResponse]:
    """Factory for stored messages."""

    def make(
        conversation_id: Optional[UUID] = None,
        sender_id: str = "alice",
        seq: int = 1,
        status: MessageStatus = MessageStatus.SENT,
        delivered_to: Optional[Dict[str, datetime]] = None,
        read_by: Optional[Dict[str, datetime]] = None,
        content: str = "hello",
    ) -> MessageResponse:
        now = datetime.now(timezone.utc)
        return MessageResponse(
            id=uuid4(),
            conversation_id=conversation_id or uuid4(),
            seq=seq,
            sender_id=sender_id,
            content=content,
            type=MessageType.TEXT,
            status=status,
            delivered_to=delivered_to or {},
            read_by=read_by or {},
            message_timestamp=now,
            created_at=now,
            updated_at=now,
        )

    return make


@pytest.fixture
def make_conversation() -> Callable[..., ConversationResponse]:
    """Factory for live conversations with active participants."""

    def make(
        user_ids: Optional[List[str]] = None,
        conversation_type: ConversationType = ConversationType.GROUP,
        owner: Optional[str] = None,
        conversation_id: Optional[UUID] = None,
    ) -> ConversationResponse:
        conversation_id = conversation_id or uuid4()
        user_ids = user_ids or ["alice", "bob"]
        now = datetime.now(timezone.utc)
        participants = [
            ParticipantResponse(
                conversation_id=conversation_id,
                user_id=user_id,
                role=ParticipantRole.OWNER if user_id == owner else ParticipantRole.MEMBER,
                is_active=True,
                joined_at=now,
            )
            for user_id in user_ids
        ]
        return ConversationResponse(
            id=conversation_id,
            type=conversation_type,
            name="team" if conversation_type == ConversationType.GROUP else None,
            created_by=owner or user_ids[0],
            created_at=now,
            updated_at=now,
            participants=participants,
        )

    return make


@pytest.fixture
def make_message_row() -> Callable[[MessageResponse], MessageModel]:
    """Build the stored row for a message, receipts as JSONB-ready strings."""

    def make(message: MessageResponse) -> MessageModel:
        return MessageModel(
            id=message.id,
            conversation_id=message.conversation_id,
            seq=message.seq,
            sender_id=message.sender_id,
            content=message.content,
            type=message.type.value,
            status=message.status.value,
            delivered_to={u: at.isoformat() for u, at in message.delivered_to.items()},
            read_by={u: at.isoformat() for u, at in message.read_by.items()},
            message_timestamp=message.message_timestamp,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )

    return make
