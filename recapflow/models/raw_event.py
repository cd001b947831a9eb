"""
Raw webhook event audit trail - every accepted webhook is recorded before
processing. Append-only; rows are never deleted.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from recapflow.database import Base


class RawEvent(Base):
    __tablename__ = "raw_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(String(30), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    external_event_id = Column(String(500), nullable=False, index=True)
    payload = Column(JSONB, nullable=False)
    status = Column(
        String(20), nullable=False, default="pending", server_default="pending", index=True
    )  # pending, processing, processed, failed
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
