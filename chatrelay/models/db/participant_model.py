from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from chatrelay.database import Base


class ParticipantModel(Base):
    """SQLAlchemy model for participants table.

    One row per (conversation, user). Leaving sets ``is_active`` to false so
    the membership history survives.
    """

    __tablename__ = "participants"

    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String(255), primary_key=True)
    role = Column(String(10), nullable=False, default="MEMBER")
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime(timezone=True), default=func.now())
    last_read_at = Column(DateTime(timezone=True))

    # Relationships
    conversation = relationship("ConversationModel", back_populates="participants")

    # Constraints (enforced by database CHECK constraints in the migration)
    # role IN ('OWNER', 'ADMIN', 'MEMBER')
