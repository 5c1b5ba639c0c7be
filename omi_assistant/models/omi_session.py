import uuid

from sqlalchemy import Column, ForeignKey, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from omi_assistant.database import Base


class OmiSession(Base):
    __tablename__ = "omi_sessions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    omi_session_id = Column(Text, nullable=False, unique=True)
    # Assigned once from a verified device link, never reassigned
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), index=True)
    conversation_handle = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    last_seen_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    user = relationship("User", back_populates="sessions")
    preferences = relationship("SessionPreference", back_populates="session", uselist=False)
    segments = relationship("TranscriptSegment", back_populates="session")
