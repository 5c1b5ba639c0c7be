import uuid

from sqlalchemy import Column, ForeignKey, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from omi_assistant.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("omi_session_id", "conversation_handle", name="uq_conversation_handle"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    omi_session_id = Column(UUID(as_uuid=True), ForeignKey("omi_sessions.id", ondelete="SET NULL"), index=True)
    conversation_handle = Column(Text, nullable=False)  # completion service context id
    title = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    ended_at = Column(TIMESTAMP(timezone=True))

    messages = relationship("Message", back_populates="conversation")
