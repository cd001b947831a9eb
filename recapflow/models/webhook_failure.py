"""
Webhook failure tracking - handler exceptions scheduled for bounded retries,
and the dead letter queue for failures that exhausted every attempt.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, ForeignKey, false
from sqlalchemy.dialects.postgresql import UUID, JSONB
from recapflow.database import Base


class WebhookFailure(Base):
    __tablename__ = "webhook_failures"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    platform = Column(String(30), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSONB, nullable=False)
    error = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    max_attempts = Column(Integer, nullable=False, default=3)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    # [{"attempt", "error", "at"}]
    failure_history = Column(JSONB, nullable=False, default=list)
    status = Column(
        String(20), nullable=False, default="pending", server_default="pending", index=True
    )  # pending, retrying, completed, dead_letter
    correlation_id = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )


class DeadLetterEntry(Base):
    __tablename__ = "dead_letter_entries"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    webhook_failure_id = Column(
        UUID(as_uuid=True), ForeignKey("webhook_failures.id", ondelete="SET NULL"),
        nullable=True, unique=True,
    )
    platform = Column(String(30), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSONB, nullable=False)
    error = Column(Text, nullable=False)
    total_attempts = Column(Integer, nullable=False)
    failure_history = Column(JSONB, nullable=False, default=list)
    resolved = Column(Boolean, nullable=False, default=False, server_default=false(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    alert_sent = Column(Boolean, nullable=False, default=False, server_default=false())
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
