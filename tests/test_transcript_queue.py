"""
Tests for recapflow/services/transcript_queue.py - one durable job per meeting.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from sqlalchemy import func, select

from recapflow.models.transcript_job import TranscriptJob
from recapflow.schemas.events import MeetConferenceSource
from recapflow.services.transcript_queue import (
    TRANSCRIPT_NOTIFY_KEY,
    JobStatus,
    TranscriptQueue,
    job_key_for,
)

SOURCE = MeetConferenceSource(conference_record="conferenceRecords/abc")


async def _job_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(TranscriptJob))).scalar()


class TestEnqueue:
    async def test_creates_pending_job(self, db):
        meeting_id = uuid.uuid4()
        job, scheduled = await TranscriptQueue(max_attempts=4).enqueue(db, meeting_id, SOURCE)

        assert scheduled is True
        assert job.job_key == job_key_for(meeting_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 4
        assert job.source == {"kind": "meet_conference", "conference_record": "conferenceRecords/abc"}

    async def test_duplicate_absorbed(self, db):
        queue = TranscriptQueue()
        meeting_id = uuid.uuid4()
        first, _ = await queue.enqueue(db, meeting_id, SOURCE)
        second, scheduled = await queue.enqueue(db, meeting_id, SOURCE, delay_seconds=60)

        assert scheduled is False
        assert second.id == first.id
        assert await _job_count(db) == 1

    async def test_completed_job_not_rearmed(self, db):
        queue = TranscriptQueue()
        meeting_id = uuid.uuid4()
        job, _ = await queue.enqueue(db, meeting_id, SOURCE)
        job.status = JobStatus.COMPLETED
        await db.flush()

        again, scheduled = await queue.enqueue(db, meeting_id, SOURCE)
        assert scheduled is False
        assert again.status == JobStatus.COMPLETED

    async def test_failed_job_rearmed(self, db):
        queue = TranscriptQueue()
        meeting_id = uuid.uuid4()
        job, _ = await queue.enqueue(db, meeting_id, SOURCE)
        job.status = JobStatus.FAILED
        job.attempts = 4
        job.error_message = "exhausted"
        await db.flush()

        again, scheduled = await queue.enqueue(db, meeting_id, {"kind": "meet_conference", "conference_record": "conferenceRecords/new"})

        assert scheduled is True
        assert again.id == job.id
        assert again.status == JobStatus.PENDING
        assert again.attempts == 0
        assert again.error_message is None
        assert again.source["conference_record"] == "conferenceRecords/new"

    async def test_delay(self, db):
        before = datetime.now(timezone.utc).replace(tzinfo=None)
        job, _ = await TranscriptQueue().enqueue(db, uuid.uuid4(), SOURCE, delay_seconds=120)
        scheduled_at = job.scheduled_at.replace(tzinfo=None)
        assert scheduled_at >= before + timedelta(seconds=119)


class TestNotify:
    async def test_pushes_wakeup(self, fake_redis):
        await TranscriptQueue(redis_factory=AsyncMock(return_value=fake_redis)).notify()
        assert fake_redis.lists[TRANSCRIPT_NOTIFY_KEY] == ["1"]

    async def test_redis_error_swallowed(self):
        queue = TranscriptQueue(redis_factory=AsyncMock(side_effect=ConnectionError("down")))
        await queue.notify()  # must not raise


class TestStats:
    async def test_counts_and_due(self, db):
        queue = TranscriptQueue()
        await queue.enqueue(db, uuid.uuid4(), SOURCE)
        await queue.enqueue(db, uuid.uuid4(), SOURCE, delay_seconds=3600)
        done, _ = await queue.enqueue(db, uuid.uuid4(), SOURCE)
        done.status = JobStatus.COMPLETED
        await db.flush()

        stats = await queue.stats(db)

        assert stats["counts"] == {"pending": 2, "processing": 0, "completed": 1, "failed": 0}
        assert stats["due"] == 1
        assert stats["oldest_pending_scheduled_at"] is not None

    async def test_empty(self, db):
        stats = await TranscriptQueue().stats(db)
        assert stats["due"] == 0
        assert stats["oldest_pending_scheduled_at"] is None
