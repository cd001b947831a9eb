"""
Meeting model - canonical, platform-agnostic record of one conferenced meeting.
One row per (platform, platform_meeting_id); every lifecycle event for the
same external meeting merges into it regardless of arrival order.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from recapflow.database import Base


class Meeting(Base):
    __tablename__ = "meetings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    platform: Mapped[str] = mapped_column(
        String(30), nullable=False
    )  # zoom, google_meet, microsoft_teams
    platform_meeting_id: Mapped[str] = mapped_column(String(255), nullable=False)

    host_email: Mapped[Optional[str]] = mapped_column(String(255))
    topic: Mapped[Optional[str]] = mapped_column(String(500))
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, processing, ready, completed, failed

    # Advisory checkpoints for external observers
    processing_step: Mapped[Optional[str]] = mapped_column(String(40))
    processing_progress: Mapped[int] = mapped_column(Integer, default=0)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    # Last known transcript pointer, used by manual reprocessing
    transcript_source: Mapped[Optional[dict]] = mapped_column(JSONB(none_as_null=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("platform", "platform_meeting_id", name="uq_meetings_platform_meeting"),
        Index("ix_meetings_status", "status", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<Meeting {self.platform}:{self.platform_meeting_id} ({self.status})>"
