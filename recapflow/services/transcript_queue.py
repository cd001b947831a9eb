"""
Transcript job queue - durable jobs in transcript_jobs, with a Redis list
used only to wake the worker early.

One logical job per meeting (job_key = transcript-{meeting_id}). Enqueueing
again while a job is pending, processing or completed is absorbed; a failed
job is re-armed so reprocessing can reuse the same key.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.models.transcript_job import TranscriptJob
from recapflow.database import dialect_insert

logger = logging.getLogger(__name__)

TRANSCRIPT_NOTIFY_KEY = "recapflow:transcript_notify"


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def job_key_for(meeting_id: Union[uuid.UUID, str]) -> str:
    return f"transcript-{meeting_id}"


class TranscriptQueue:
    """Enqueue side of the transcript retrieval queue."""

    def __init__(self, max_attempts: int = 4, redis_factory=None):
        self.max_attempts = max_attempts
        self._redis_factory = redis_factory

    async def enqueue(
        self,
        db: AsyncSession,
        meeting_id: uuid.UUID,
        source: Optional[Union[BaseModel, dict]],
        delay_seconds: int = 0,
    ) -> tuple[TranscriptJob, bool]:
        """
        Schedule transcript retrieval for a meeting.
        Returns (job, scheduled) where scheduled is False for an absorbed duplicate.
        """
        if isinstance(source, BaseModel):
            source = source.model_dump()
        now = datetime.now(timezone.utc)
        scheduled_at = now + timedelta(seconds=max(delay_seconds, 0))
        key = job_key_for(meeting_id)

        insert = dialect_insert(db)
        result = await db.execute(
            insert(TranscriptJob)
            .values(
                id=uuid.uuid4(),
                job_key=key,
                meeting_id=meeting_id,
                source=source,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
                scheduled_at=scheduled_at,
                created_at=now,
            )
            .on_conflict_do_nothing(index_elements=["job_key"])
        )
        created = result.rowcount == 1

        rearmed = False
        if not created:
            rearm = await db.execute(
                update(TranscriptJob)
                .where(TranscriptJob.job_key == key, TranscriptJob.status == JobStatus.FAILED)
                .values(
                    status=JobStatus.PENDING,
                    source=source,
                    attempts=0,
                    scheduled_at=scheduled_at,
                    started_at=None,
                    completed_at=None,
                    error_message=None,
                )
                .execution_options(synchronize_session=False)
            )
            rearmed = rearm.rowcount == 1

        job = (
            await db.execute(
                select(TranscriptJob)
                .where(TranscriptJob.job_key == key)
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        if created or rearmed:
            logger.info(
                "Transcript job %s for meeting %s (delay=%ds id=%s)",
                "enqueued" if created else "re-armed", str(meeting_id)[:8],
                delay_seconds, str(job.id)[:8],
                extra={"meeting_id": str(meeting_id), "job_id": str(job.id)},
            )
        else:
            logger.info(
                "Transcript job for meeting %s already %s, duplicate absorbed",
                str(meeting_id)[:8], job.status,
                extra={"meeting_id": str(meeting_id), "job_id": str(job.id)},
            )
        return job, created or rearmed

    async def notify(self) -> None:
        """Wake the worker immediately. Best-effort; the worker also polls."""
        try:
            if self._redis_factory is not None:
                redis = await self._redis_factory()
            else:
                from recapflow.utils.redis_client import get_redis
                redis = await get_redis()
            await redis.lpush(TRANSCRIPT_NOTIFY_KEY, "1")
        except Exception as e:
            logger.debug("Failed to notify transcript worker: %s", str(e))

    async def stats(self, db: AsyncSession) -> dict:
        """Job counts by status plus the oldest due pending job."""
        counts = {
            JobStatus.PENDING: 0,
            JobStatus.PROCESSING: 0,
            JobStatus.COMPLETED: 0,
            JobStatus.FAILED: 0,
        }
        rows = await db.execute(
            select(TranscriptJob.status, func.count()).group_by(TranscriptJob.status)
        )
        for status, count in rows.all():
            counts[status] = count

        now = datetime.now(timezone.utc)
        due = await db.execute(
            select(func.count())
            .select_from(TranscriptJob)
            .where(TranscriptJob.status == JobStatus.PENDING, TranscriptJob.scheduled_at <= now)
        )
        oldest = await db.execute(
            select(func.min(TranscriptJob.scheduled_at)).where(TranscriptJob.status == JobStatus.PENDING)
        )
        oldest_at = oldest.scalar()
        return {
            "counts": counts,
            "due": due.scalar() or 0,
            "oldest_pending_scheduled_at": oldest_at.isoformat() if oldest_at else None,
        }


def get_transcript_queue() -> TranscriptQueue:
    from recapflow.config import get_settings
    return TranscriptQueue(max_attempts=get_settings().transcript_job_max_attempts)
