"""
Transcript model - one normalized transcript per meeting.
Created on the first fetch attempt and updated in place on retries.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from recapflow.database import Base


class Transcript(Base):
    __tablename__ = "transcripts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    meeting_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("meetings.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    platform: Mapped[str] = mapped_column(String(30), nullable=False)

    content: Mapped[Optional[str]] = mapped_column(Text)
    raw_caption_content: Mapped[Optional[str]] = mapped_column(Text)
    # [{"speaker", "text", "start_time", "end_time"}] with times in milliseconds
    speaker_segments: Mapped[Optional[list]] = mapped_column(JSONB)
    word_count: Mapped[int] = mapped_column(Integer, default=0)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, fetching, ready, failed
    fetch_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_fetch_error: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Transcript meeting={str(self.meeting_id)[:8]} ({self.status})>"
