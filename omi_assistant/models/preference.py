from sqlalchemy import Boolean, Column, ForeignKey, Integer, Text
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from omi_assistant.database import Base


class UserPreference(Base):
    __tablename__ = "user_preferences"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    listen_mode = Column(Text, nullable=False, default="TRIGGER")  # TRIGGER, FOLLOWUP, ALWAYS
    followup_window_ms = Column(Integer, nullable=False, default=8000)
    meeting_transcribe = Column(Boolean, nullable=False, default=False)
    inject_memories = Column(Boolean, nullable=False, default=False)
    activation_regex = Column(Text)
    mute = Column(Boolean, nullable=False, default=False)
    quiet_hours_start = Column(Text)  # "22" or "22:30"
    quiet_hours_end = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class SessionPreference(Base):
    __tablename__ = "session_preferences"

    omi_session_id = Column(UUID(as_uuid=True), ForeignKey("omi_sessions.id", ondelete="CASCADE"), primary_key=True)
    listen_mode = Column(Text)
    followup_window_ms = Column(Integer)
    meeting_transcribe = Column(Boolean)
    # Present for schema parity with user_preferences; never read
    inject_memories = Column(Boolean)
    activation_regex = Column(Text)
    mute = Column(Boolean)
    quiet_hours_start = Column(Text)
    quiet_hours_end = Column(Text)
    updated_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    session = relationship("OmiSession", back_populates="preferences")
