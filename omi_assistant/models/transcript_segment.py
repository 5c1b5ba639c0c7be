import uuid

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from omi_assistant.database import Base


class TranscriptSegment(Base):
    __tablename__ = "transcript_segments"
    __table_args__ = (UniqueConstraint("omi_session_id", "omi_segment_id", name="uq_transcript_segment"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    omi_session_id = Column(UUID(as_uuid=True), ForeignKey("omi_sessions.id", ondelete="CASCADE"), nullable=False)
    omi_segment_id = Column(Text, nullable=False)
    text = Column(Text, nullable=False)
    speaker = Column(Text)
    speaker_id = Column(Integer)
    is_user = Column(Boolean)
    start = Column(Float)
    end = Column(Float)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())

    session = relationship("OmiSession", back_populates="segments")
