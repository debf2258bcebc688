import uuid

from sqlalchemy import BigInteger, Column, DateTime, Index, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class ConversationModel(Base):
    """SQLAlchemy model for conversations table."""

    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(String(10), nullable=False)
    name = Column(String(255))
    created_by = Column(String(255), nullable=False)
    # Sorted "a:b" user pair, DIRECT conversations only
    direct_key = Column(String(520))
    # Last sequence number handed out to a message in this conversation
    message_seq = Column(BigInteger, nullable=False, default=0, server_default="0")
    last_message_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
    deleted_at = Column(DateTime(timezone=True))

    # Relationships
    messages = relationship(
        "MessageModel",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    participants = relationship(
        "ParticipantModel",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_conversations_direct_key_live",
            "direct_key",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )

    # Constraints (enforced by database CHECK constraints in the migration)
    # type IN ('DIRECT', 'GROUP')
