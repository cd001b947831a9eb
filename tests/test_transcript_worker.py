"""
Tests for recapflow/workers/transcript_worker.py - claiming, running and retrying transcript jobs.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from recapflow.errors import TranscriptNotReadyError
from recapflow.models.meeting import Meeting
from recapflow.models.transcript_job import TranscriptJob
from recapflow.schemas.events import ZoomDownloadSource
from recapflow.services.drafts import DraftResult
from recapflow.services.meeting_state import MeetingStatus
from recapflow.services.meetings import get_meeting
from recapflow.services.transcript_queue import JobStatus, TranscriptQueue
from recapflow.transcripts.downloader import CaptionDownloader
from recapflow.transcripts.fetcher import TranscriptFetcher
from recapflow.utils.background import drain
from recapflow.workers.transcript_worker import (
    claim_due_jobs,
    process_cycle,
    process_job,
    rearm_stale_jobs,
)

SOURCE = ZoomDownloadSource(download_url="https://zoom.example/rec/t.vtt", download_token="tok")


@pytest.fixture
def worker_session(session_factory):
    with patch("recapflow.workers.transcript_worker.async_session_factory", session_factory):
        yield


@pytest.fixture
def mock_alert():
    with patch("recapflow.workers.transcript_worker.send_alert", new_callable=AsyncMock) as mock:
        yield mock


def _fetcher(download: AsyncMock) -> TranscriptFetcher:
    zoom = MagicMock()
    zoom.download_transcript = download
    return TranscriptFetcher(downloader=CaptionDownloader(zoom=zoom))


def _draft_client(success: bool = True) -> MagicMock:
    client = MagicMock()
    client.generate = AsyncMock(return_value=DraftResult(success=success, draftId="d-1"))
    return client


async def _meeting_with_job(db, delay_seconds: int = 0) -> tuple[Meeting, TranscriptJob]:
    meeting = Meeting(
        id=uuid.uuid4(), platform="zoom", platform_meeting_id=f"m-{uuid.uuid4().hex[:6]}",
        status=MeetingStatus.PENDING, transcript_source=SOURCE.model_dump(),
    )
    db.add(meeting)
    await db.flush()
    job, _ = await TranscriptQueue().enqueue(db, meeting.id, SOURCE, delay_seconds=delay_seconds)
    await db.commit()
    return meeting, job


async def _job(db, job_id) -> TranscriptJob:
    return (
        await db.execute(
            select(TranscriptJob).where(TranscriptJob.id == job_id).execution_options(populate_existing=True)
        )
    ).scalar_one()


class TestClaimDueJobs:
    async def test_claims_due_only(self, db, worker_session):
        _, due = await _meeting_with_job(db)
        _, later = await _meeting_with_job(db, delay_seconds=3600)

        claimed = await claim_due_jobs(10)

        assert claimed == [due.id]
        job = await _job(db, due.id)
        assert job.status == JobStatus.PROCESSING
        assert job.attempts == 1
        assert (await _job(db, later.id)).status == JobStatus.PENDING

    async def test_second_claim_gets_nothing(self, db, worker_session):
        await _meeting_with_job(db)
        assert len(await claim_due_jobs(10)) == 1
        assert await claim_due_jobs(10) == []


class TestRearmStaleJobs:
    async def test_stuck_processing_rearmed(self, db, worker_session):
        _, job = await _meeting_with_job(db)
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(timezone.utc) - timedelta(minutes=30)
        await db.commit()

        assert await rearm_stale_jobs(stale_minutes=10) == 1
        assert (await _job(db, job.id)).status == JobStatus.PENDING

    async def test_recent_processing_left_alone(self, db, worker_session):
        _, job = await _meeting_with_job(db)
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(timezone.utc)
        await db.commit()

        assert await rearm_stale_jobs(stale_minutes=10) == 0


class TestProcessJob:
    async def test_ready_transcript_completes_meeting(self, db, worker_session, sample_vtt):
        meeting, job = await _meeting_with_job(db)
        await claim_due_jobs(10)
        draft_client = _draft_client()

        status = await process_job(
            job.id, fetcher=_fetcher(AsyncMock(return_value=sample_vtt)), draft_client=draft_client,
        )

        assert status == JobStatus.COMPLETED
        assert (await _job(db, job.id)).status == JobStatus.COMPLETED
        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.COMPLETED
        draft_client.generate.assert_awaited_once()

    async def test_draft_failure_still_completes(self, db, worker_session, sample_vtt):
        meeting, job = await _meeting_with_job(db)
        await claim_due_jobs(10)

        await process_job(
            job.id, fetcher=_fetcher(AsyncMock(return_value=sample_vtt)), draft_client=_draft_client(False),
        )

        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.COMPLETED

    async def test_not_ready_rescheduled_with_fetch_backoff(self, db, worker_session):
        meeting, job = await _meeting_with_job(db)
        await claim_due_jobs(10)
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        status = await process_job(
            job.id,
            fetcher=_fetcher(AsyncMock(side_effect=TranscriptNotReadyError("not ready", status_code=404))),
            draft_client=_draft_client(),
        )

        assert status == JobStatus.PENDING
        refreshed = await _job(db, job.id)
        assert refreshed.status == JobStatus.PENDING
        # Fetch ladder (120s) dominates the job's own 1s backoff
        assert refreshed.scheduled_at.replace(tzinfo=None) >= before + timedelta(seconds=119)
        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.PROCESSING

    async def test_exhausted_job_fails_meeting_and_alerts(self, db, worker_session, mock_alert):
        meeting, job = await _meeting_with_job(db)
        job.attempts = 4
        job.status = JobStatus.PROCESSING
        await db.commit()

        status = await process_job(
            job.id,
            fetcher=_fetcher(AsyncMock(side_effect=TranscriptNotReadyError("not ready", status_code=404))),
            draft_client=_draft_client(),
        )
        await drain()

        assert status == JobStatus.FAILED
        assert (await _job(db, job.id)).status == JobStatus.FAILED
        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.FAILED
        mock_alert.assert_called_once()

    async def test_unexpected_exception_retried(self, db, worker_session):
        meeting, job = await _meeting_with_job(db)
        await claim_due_jobs(10)
        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(side_effect=RuntimeError("connection pool exhausted"))

        status = await process_job(job.id, fetcher=fetcher, draft_client=_draft_client(), backoff_seconds=1.0)

        assert status == JobStatus.PENDING
        refreshed = await _job(db, job.id)
        assert refreshed.status == JobStatus.PENDING
        assert "connection pool exhausted" in refreshed.error_message

    async def test_missing_job(self, db, worker_session):
        assert await process_job(uuid.uuid4(), fetcher=MagicMock()) == JobStatus.FAILED

    async def test_meeting_without_source_fails(self, db, worker_session):
        meeting = Meeting(id=uuid.uuid4(), platform="zoom", platform_meeting_id="nosrc", status=MeetingStatus.PENDING)
        db.add(meeting)
        await db.flush()
        job, _ = await TranscriptQueue().enqueue(db, meeting.id, None)
        await db.commit()

        status = await process_job(job.id, fetcher=MagicMock())

        assert status == JobStatus.FAILED
        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.FAILED


class TestProcessCycle:
    async def test_runs_due_job(self, db, worker_session, sample_vtt):
        meeting, job = await _meeting_with_job(db)

        ran = await process_cycle(
            fetcher=_fetcher(AsyncMock(return_value=sample_vtt)), draft_client=_draft_client(),
        )

        assert ran == 1
        assert (await _job(db, job.id)).status == JobStatus.COMPLETED
        assert (await get_meeting(db, meeting.id)).status == MeetingStatus.COMPLETED

    async def test_nothing_due(self, db, worker_session):
        assert await process_cycle(fetcher=MagicMock(), draft_client=_draft_client()) == 0
