"""Initial schema: webhook audit, meetings, transcripts, retry and job queue tables.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Raw webhook events (append-only audit trail)
    op.create_table(
        "raw_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("external_event_id", sa.String(500), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("error_message", sa.Text),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_raw_events_platform", "raw_events", ["platform"])
    op.create_index("ix_raw_events_external_event_id", "raw_events", ["external_event_id"])
    op.create_index("ix_raw_events_status", "raw_events", ["status"])
    op.create_index("ix_raw_events_correlation_id", "raw_events", ["correlation_id"])

    # Canonical meetings
    op.create_table(
        "meetings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("platform_meeting_id", sa.String(255), nullable=False),
        sa.Column("host_email", sa.String(255)),
        sa.Column("topic", sa.String(500)),
        sa.Column("start_time", sa.DateTime(timezone=True)),
        sa.Column("end_time", sa.DateTime(timezone=True)),
        sa.Column("duration_minutes", sa.Integer),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("processing_step", sa.String(40)),
        sa.Column("processing_progress", sa.Integer, server_default="0"),
        sa.Column("processing_started_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("transcript_source", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("platform", "platform_meeting_id", name="uq_meetings_platform_meeting"),
    )
    op.create_index("ix_meetings_status", "meetings", ["status", "updated_at"])

    # Transcripts (one per meeting)
    op.create_table(
        "transcripts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "meeting_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("meetings.id", ondelete="CASCADE"), nullable=False, unique=True,
        ),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("raw_caption_content", sa.Text),
        sa.Column("speaker_segments", postgresql.JSONB),
        sa.Column("word_count", sa.Integer, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("fetch_attempts", sa.Integer, server_default="0"),
        sa.Column("last_fetch_error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Webhook failures awaiting retry
    op.create_table(
        "webhook_failures",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("next_retry_at", sa.DateTime(timezone=True)),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True)),
        sa.Column("failure_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_webhook_failures_platform", "webhook_failures", ["platform"])
    op.create_index("ix_webhook_failures_status", "webhook_failures", ["status"])
    op.create_index("ix_webhook_failures_next_retry_at", "webhook_failures", ["next_retry_at"])

    # Dead letter queue (one entry per exhausted failure)
    op.create_table(
        "dead_letter_entries",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "webhook_failure_id", postgresql.UUID(as_uuid=True),
            sa.ForeignKey("webhook_failures.id", ondelete="SET NULL"), unique=True,
        ),
        sa.Column("platform", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False),
        sa.Column("error", sa.Text, nullable=False),
        sa.Column("total_attempts", sa.Integer, nullable=False),
        sa.Column("failure_history", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("resolved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolution_notes", sa.Text),
        sa.Column("alert_sent", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_dead_letter_entries_platform", "dead_letter_entries", ["platform"])
    op.create_index("ix_dead_letter_entries_resolved", "dead_letter_entries", ["resolved"])

    # Transcript retrieval jobs
    op.create_table(
        "transcript_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_key", sa.String(100), nullable=False, unique=True),
        sa.Column("meeting_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("source", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("max_attempts", sa.Integer, server_default="4"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_transcript_jobs_meeting_id", "transcript_jobs", ["meeting_id"])
    op.create_index("ix_transcript_jobs_processing", "transcript_jobs", ["status", "scheduled_at"])


def downgrade() -> None:
    op.drop_table("transcript_jobs")
    op.drop_table("dead_letter_entries")
    op.drop_table("webhook_failures")
    op.drop_table("transcripts")
    op.drop_table("meetings")
    op.drop_table("raw_events")
