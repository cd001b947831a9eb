"""
Meeting state machine.

    pending -> processing -> ready -> completed
        \\__________\\_________\\___-> failed

completed is terminal. failed is terminal except for manual reprocessing
(failed -> pending), or a new transcript pointer for a meeting the stuck
sweeper failed. Every transition is a conditional UPDATE guarded by the
allowed source states, so a lost race is a no-op instead of a regression.

processing_step / processing_progress are advisory checkpoints for external
observers. The only step the pipeline branches on is STUCK_STEP.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.models.meeting import Meeting

logger = logging.getLogger(__name__)


class MeetingStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    READY = "ready"
    COMPLETED = "completed"
    FAILED = "failed"


PROCESSING_STAGES: dict[str, int] = {
    "webhook_received": 5,
    "meeting_fetched": 10,
    "meeting_created": 15,
    "transcript_download": 30,
    "transcript_parse": 50,
    "transcript_stored": 60,
    "draft_generation": 80,
    "completed": 100,
    "failed": 0,
    "stuck_timeout": 0,
}

# Failure step set by the stuck-meeting sweeper; a later transcript pointer may reopen it
STUCK_STEP = "stuck_timeout"

ALLOWED_FROM: dict[str, tuple[str, ...]] = {
    MeetingStatus.PROCESSING: (MeetingStatus.PENDING, MeetingStatus.PROCESSING),
    MeetingStatus.READY: (MeetingStatus.PENDING, MeetingStatus.PROCESSING),
    MeetingStatus.COMPLETED: (MeetingStatus.READY,),
    MeetingStatus.FAILED: (MeetingStatus.PENDING, MeetingStatus.PROCESSING, MeetingStatus.READY),
    MeetingStatus.PENDING: (MeetingStatus.FAILED,),
}

DEFAULT_STEP: dict[str, str] = {
    MeetingStatus.PROCESSING: "transcript_download",
    MeetingStatus.READY: "transcript_stored",
    MeetingStatus.COMPLETED: "completed",
    MeetingStatus.FAILED: "failed",
    MeetingStatus.PENDING: "meeting_created",
}


async def transition(
    db: AsyncSession,
    meeting_id: uuid.UUID,
    to_status: str,
    step: Optional[str] = None,
    error: Optional[str] = None,
) -> bool:
    """Move a meeting to to_status if its current status allows it."""
    now = datetime.now(timezone.utc)
    step = step or DEFAULT_STEP[to_status]
    values = {
        "status": to_status,
        "processing_step": step,
        "processing_progress": PROCESSING_STAGES.get(step, 0),
        "updated_at": now,
    }
    if to_status == MeetingStatus.PROCESSING:
        values["processing_started_at"] = now
    if to_status == MeetingStatus.FAILED:
        values["error_message"] = (error or "Unknown error")[:2000]
    elif to_status in (MeetingStatus.READY, MeetingStatus.COMPLETED, MeetingStatus.PENDING):
        values["error_message"] = None

    result = await db.execute(
        update(Meeting)
        .where(Meeting.id == meeting_id, Meeting.status.in_(ALLOWED_FROM[to_status]))
        .values(**values)
    )
    changed = result.rowcount > 0
    if changed:
        logger.info(
            "Meeting %s -> %s (step=%s)", str(meeting_id)[:8], to_status, step,
            extra={"meeting_id": str(meeting_id)},
        )
    else:
        logger.debug("Meeting %s transition to %s not allowed from current state", str(meeting_id)[:8], to_status)
    return changed


async def set_step(db: AsyncSession, meeting_id: uuid.UUID, step: str) -> None:
    """Record an advisory checkpoint without touching status."""
    await db.execute(
        update(Meeting)
        .where(Meeting.id == meeting_id)
        .values(
            processing_step=step,
            processing_progress=PROCESSING_STAGES.get(step, 0),
            updated_at=datetime.now(timezone.utc),
        )
    )


async def mark_failed(db: AsyncSession, meeting_id: uuid.UUID, error: str, step: Optional[str] = None) -> bool:
    logger.error("Meeting %s failed: %s", str(meeting_id)[:8], error[:200])
    return await transition(db, meeting_id, MeetingStatus.FAILED, step=step, error=error)
