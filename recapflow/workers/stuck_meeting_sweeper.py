"""
Stuck meeting sweeper - fails meetings that stopped making progress.
Runs every 5 minutes. Prevents meetings from sitting in pending/processing forever.

A meeting is stuck when it has been pending or processing for longer than the
threshold (measured from processing_started_at, else created_at) and no
transcript job is pending or running for it.
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, func, or_, select

from recapflow.database import async_session_factory
from recapflow.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 300  # 5 minutes
MAX_MEETINGS_PER_SWEEP = 100


async def run_stuck_meeting_sweeper():
    """Main sweeper loop. Runs continuously every 5 minutes."""
    logger.info("Stuck meeting sweeper started")

    while True:
        try:
            found = await sweep_stuck_meetings()
            if found > 0:
                logger.info("Stuck meeting sweeper failed %d meeting(s)", found)
        except Exception as e:
            logger.error("Stuck meeting sweeper error: %s", str(e), exc_info=True)

        await write_heartbeat("stuck_meeting_sweeper", 600)
        await asyncio.sleep(SWEEP_INTERVAL_SECONDS)


async def sweep_stuck_meetings(threshold_minutes: Optional[int] = None) -> int:
    """Mark stuck meetings failed. Returns count failed."""
    from recapflow.config import get_settings
    from recapflow.models.meeting import Meeting
    from recapflow.models.transcript_job import TranscriptJob
    from recapflow.services.meeting_state import STUCK_STEP, MeetingStatus, mark_failed
    from recapflow.services.transcript_queue import JobStatus
    from recapflow.utils.alerting import AlertType, send_alert

    if threshold_minutes is None:
        threshold_minutes = get_settings().stuck_meeting_threshold_minutes
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=threshold_minutes)

    active_job = (
        select(TranscriptJob.id)
        .where(
            TranscriptJob.meeting_id == Meeting.id,
            TranscriptJob.status.in_([JobStatus.PENDING, JobStatus.PROCESSING]),
        )
        .exists()
    )
    since = func.coalesce(Meeting.processing_started_at, Meeting.created_at)

    failed = 0
    async with async_session_factory() as db:
        result = await db.execute(
            select(Meeting.id, Meeting.status)
            .where(
                and_(
                    or_(Meeting.status == MeetingStatus.PENDING, Meeting.status == MeetingStatus.PROCESSING),
                    since < cutoff,
                    ~active_job,
                )
            )
            .limit(MAX_MEETINGS_PER_SWEEP)
        )
        for meeting_id, status in result.all():
            message = f"Meeting stuck in {status} for over {threshold_minutes} minutes with no active transcript job"
            if await mark_failed(db, meeting_id, message, step=STUCK_STEP):
                failed += 1
        await db.commit()

    if failed:
        await send_alert(
            AlertType.STUCK_MEETINGS_FOUND,
            f"{failed} meeting(s) stuck for over {threshold_minutes} minutes were marked failed",
            severity="warning",
        )
    return failed
