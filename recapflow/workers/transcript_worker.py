"""
Transcript worker - drains the transcript_jobs queue.

Uses BRPOP on a Redis notification key for near-instant wake on new jobs,
with a timeout falling back to a DB poll. Due jobs are claimed with a
conditional UPDATE (pending -> processing) so two workers never run the same
job, then executed on a bounded pool, each in its own session.

Per job: fetch (download, parse, store -> ready) -> draft -> completed.
Not-ready transcripts are retried with exponential backoff; an exhausted
budget marks the meeting failed.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update

from recapflow.database import async_session_factory
from recapflow.models.meeting import Meeting
from recapflow.models.transcript_job import TranscriptJob
from recapflow.services.drafts import DraftClient, generate_draft_and_complete
from recapflow.services.meeting_state import mark_failed
from recapflow.services.transcript_queue import TRANSCRIPT_NOTIFY_KEY, JobStatus
from recapflow.schemas.events import parse_transcript_source
from recapflow.transcripts.fetcher import TranscriptFetcher, get_transcript_fetcher
from recapflow.utils.alerting import AlertType, send_alert
from recapflow.utils.background import spawn
from recapflow.utils.logging import correlation_scope, log_context
from recapflow.utils.redis_client import get_redis, write_heartbeat

logger = logging.getLogger(__name__)

MAX_JOBS_PER_CYCLE = 20
STALE_PROCESSING_MINUTES = 10
HEARTBEAT_TTL_SECONDS = 120


async def run_transcript_worker():
    """Main loop - wait for a notification or poll."""
    from recapflow.config import get_settings
    settings = get_settings()
    poll_seconds = settings.transcript_worker_poll_seconds
    logger.info(
        "Transcript worker started (concurrency=%d, BRPOP %ds timeout)",
        settings.transcript_worker_concurrency, poll_seconds,
    )

    while True:
        try:
            processed = await process_cycle()
            if processed:
                logger.info("Transcript worker processed %d job(s)", processed)
        except Exception as e:
            logger.error("Transcript worker cycle error: %s", str(e), exc_info=True)

        await write_heartbeat("transcript_worker", HEARTBEAT_TTL_SECONDS)

        try:
            redis = await get_redis()
            result = await redis.brpop(TRANSCRIPT_NOTIFY_KEY, timeout=poll_seconds)
            if result:
                # Drain extra notifications so they don't stack
                while await redis.rpop(TRANSCRIPT_NOTIFY_KEY):
                    pass
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            await asyncio.sleep(poll_seconds)


async def process_cycle(
    fetcher: Optional[TranscriptFetcher] = None,
    draft_client: Optional[DraftClient] = None,
) -> int:
    """Re-arm stale jobs, claim due ones and run them. Returns jobs run."""
    from recapflow.config import get_settings
    settings = get_settings()

    await rearm_stale_jobs()
    job_ids = await claim_due_jobs(MAX_JOBS_PER_CYCLE)
    if not job_ids:
        return 0

    fetcher = fetcher or get_transcript_fetcher()
    semaphore = asyncio.Semaphore(settings.transcript_worker_concurrency)

    async def _bounded(job_id: uuid.UUID) -> None:
        async with semaphore:
            await process_job(
                job_id,
                fetcher=fetcher,
                draft_client=draft_client,
                backoff_seconds=settings.transcript_job_backoff_seconds,
            )

    results = await asyncio.gather(*(_bounded(job_id) for job_id in job_ids), return_exceptions=True)
    for job_id, outcome in zip(job_ids, results):
        if isinstance(outcome, Exception):
            logger.error("Transcript job %s crashed: %s", str(job_id)[:8], str(outcome))
    return len(job_ids)


async def claim_due_jobs(limit: int) -> list[uuid.UUID]:
    """Claim due pending jobs. Only ids whose conditional UPDATE won are returned."""
    now = datetime.now(timezone.utc)
    claimed: list[uuid.UUID] = []

    async with async_session_factory() as db:
        result = await db.execute(
            select(TranscriptJob.id)
            .where(TranscriptJob.status == JobStatus.PENDING, TranscriptJob.scheduled_at <= now)
            .order_by(TranscriptJob.scheduled_at)
            .limit(limit)
        )
        for job_id in result.scalars().all():
            won = await db.execute(
                update(TranscriptJob)
                .where(TranscriptJob.id == job_id, TranscriptJob.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.PROCESSING,
                    started_at=now,
                    attempts=TranscriptJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if won.rowcount == 1:
                claimed.append(job_id)
        await db.commit()

    return claimed


async def rearm_stale_jobs(stale_minutes: int = STALE_PROCESSING_MINUTES) -> int:
    """Return jobs stuck in processing (crashed worker) to pending."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=stale_minutes)
    async with async_session_factory() as db:
        result = await db.execute(
            update(TranscriptJob)
            .where(TranscriptJob.status == JobStatus.PROCESSING, TranscriptJob.started_at < cutoff)
            .values(status=JobStatus.PENDING, scheduled_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    if result.rowcount:
        logger.warning("Re-armed %d stale transcript job(s)", result.rowcount)
    return result.rowcount or 0


async def process_job(
    job_id: uuid.UUID,
    fetcher: Optional[TranscriptFetcher] = None,
    draft_client: Optional[DraftClient] = None,
    backoff_seconds: float = 1.0,
) -> str:
    """Run one claimed job. Returns the job's resulting status."""
    fetcher = fetcher or get_transcript_fetcher()

    async with async_session_factory() as db:
        job = (
            await db.execute(
                select(TranscriptJob)
                .where(TranscriptJob.id == job_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if job is None:
            return JobStatus.FAILED

        with correlation_scope(), log_context(
            worker="transcript_worker", job_id=str(job.id), meeting_id=str(job.meeting_id),
        ):
            try:
                status = await _run_job(db, job, fetcher, draft_client, backoff_seconds)
                await db.commit()
                return status
            except Exception as e:
                logger.error(
                    "Transcript job %s raised: %s", str(job.id)[:8], str(e), exc_info=True,
                )
                await db.rollback()
                job = (
                    await db.execute(
                        select(TranscriptJob)
                        .where(TranscriptJob.id == job_id)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one()
                status = await _schedule_retry(db, job, str(e) or type(e).__name__, 0, backoff_seconds)
                await db.commit()
                return status


async def _run_job(db, job: TranscriptJob, fetcher, draft_client, backoff_seconds: float) -> str:
    meeting = (
        await db.execute(
            select(Meeting).where(Meeting.id == job.meeting_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if meeting is None:
        return _finish(job, JobStatus.FAILED, "Meeting not found")

    source_data = job.source or meeting.transcript_source
    if not source_data:
        await mark_failed(db, meeting.id, "No transcript source recorded for meeting")
        return _finish(job, JobStatus.FAILED, "No transcript source")
    source = parse_transcript_source(source_data)

    result = await fetcher.fetch(db, meeting.id, source)

    if result.is_ready:
        draft = await generate_draft_and_complete(db, meeting.id, client=draft_client)
        logger.info(
            "Transcript job %s completed for meeting %s (draft=%s)",
            str(job.id)[:8], str(meeting.id)[:8],
            "skipped" if draft is None else ("ok" if draft.success else "failed"),
        )
        return _finish(job, JobStatus.COMPLETED)

    if result.should_retry:
        return await _schedule_retry(
            db, job, result.error or "Transcript not ready", result.retry_after_seconds or 0, backoff_seconds,
        )

    return _finish(job, JobStatus.FAILED, result.error)


def _finish(job: TranscriptJob, status: str, error: Optional[str] = None) -> str:
    job.status = status
    job.completed_at = datetime.now(timezone.utc)
    job.error_message = error[:2000] if error else None
    return status


async def _schedule_retry(
    db,
    job: TranscriptJob,
    error: str,
    min_delay_seconds: int,
    backoff_seconds: float,
) -> str:
    if job.attempts >= job.max_attempts:
        message = f"Transcript retrieval exhausted after {job.attempts} attempts: {error[:200]}"
        await mark_failed(db, job.meeting_id, message)
        spawn(
            send_alert(
                AlertType.TRANSCRIPT_JOB_EXHAUSTED,
                message,
                extra={"meeting_id": str(job.meeting_id), "job_id": str(job.id)},
            ),
            name=f"job-exhausted-alert-{str(job.id)[:8]}",
        )
        return _finish(job, JobStatus.FAILED, error)

    delay = max(backoff_seconds * (2 ** max(job.attempts - 1, 0)), min_delay_seconds)
    job.status = JobStatus.PENDING
    job.error_message = error[:2000]
    job.scheduled_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
    logger.warning(
        "Transcript job %s retry %d/%d in %.0fs: %s",
        str(job.id)[:8], job.attempts, job.max_attempts, delay, error[:200],
    )
    return JobStatus.PENDING
