import uuid

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class MessageModel(Base):
    """SQLAlchemy model for messages table."""

    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    seq = Column(BigInteger, nullable=False)
    sender_id = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(10), nullable=False, default="TEXT")
    status = Column(String(10), nullable=False, default="SENT")
    # user id -> ISO-8601 timestamp
    delivered_to = Column(JSONB, nullable=False, default=dict)
    read_by = Column(JSONB, nullable=False, default=dict)
    message_timestamp = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )

    # Relationships
    conversation = relationship("ConversationModel", back_populates="messages")

    __table_args__ = (
        UniqueConstraint("conversation_id", "seq", name="uq_messages_conversation_seq"),
    )

    # Constraints (enforced by database CHECK constraints in the migration)
    # type IN ('TEXT', 'IMAGE', 'FILE', 'SYSTEM')
    # status IN ('PENDING', 'SENT', 'DELIVERED', 'READ')
