"""
Meeting upsert - create-if-absent / merge-if-present in one atomic statement.

INSERT ... ON CONFLICT (platform, platform_meeting_id) DO UPDATE never touches
status, and every merged field uses a commutative rule, so lifecycle events
for one meeting converge to the same row in any arrival order:

- start_time: earliest known
- end_time, duration_minutes: latest / longest known
- host_email, topic, transcript_source: the greatest non-null value, so two
  events that disagree always settle on the same one
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.database import dialect_insert
from recapflow.models.meeting import Meeting
from recapflow.models.transcript import Transcript
from recapflow.schemas.events import CanonicalEvent
from recapflow.services.meeting_state import PROCESSING_STAGES, MeetingStatus, transition

logger = logging.getLogger(__name__)

LEAST_FIELDS = ("start_time",)
GREATEST_FIELDS = ("end_time", "duration_minutes", "host_email", "topic", "transcript_source")


def _merge_functions(db: AsyncSession):
    """(least, greatest) for the bound dialect. SQLite spells them min/max."""
    if db.get_bind().dialect.name == "sqlite":
        return func.min, func.max
    return func.least, func.greatest


def _null_safe(fn, current, incoming):
    # SQLite's scalar min/max return NULL when either side is NULL
    return fn(func.coalesce(current, incoming), func.coalesce(incoming, current))


async def upsert_meeting(db: AsyncSession, event: CanonicalEvent) -> tuple[Meeting, bool]:
    """
    Upsert the canonical meeting referenced by an event.
    Returns (meeting, created).
    """
    if not event.platform_meeting_id:
        raise ValueError("event has no platform_meeting_id")

    now = datetime.now(timezone.utc)
    new_id = uuid.uuid4()
    source = event.transcript_source.model_dump() if event.transcript_source else None

    insert = dialect_insert(db)
    stmt = insert(Meeting).values(
        id=new_id,
        platform=event.platform,
        platform_meeting_id=event.platform_meeting_id,
        host_email=event.host_email,
        topic=event.topic,
        start_time=event.start_time,
        end_time=event.end_time,
        duration_minutes=event.duration_minutes,
        status=MeetingStatus.PENDING,
        processing_step="meeting_created",
        processing_progress=PROCESSING_STAGES["meeting_created"],
        transcript_source=source,
        created_at=now,
        updated_at=now,
    )
    table = Meeting.__table__
    least, greatest = _merge_functions(db)
    merge = {name: _null_safe(least, table.c[name], stmt.excluded[name]) for name in LEAST_FIELDS}
    merge.update(
        {name: _null_safe(greatest, table.c[name], stmt.excluded[name]) for name in GREATEST_FIELDS}
    )
    merge["updated_at"] = stmt.excluded.updated_at
    stmt = stmt.on_conflict_do_update(
        index_elements=["platform", "platform_meeting_id"],
        set_=merge,
    )
    await db.execute(stmt)

    result = await db.execute(
        select(Meeting)
        .where(
            Meeting.platform == event.platform,
            Meeting.platform_meeting_id == event.platform_meeting_id,
        )
        .execution_options(populate_existing=True)
    )
    meeting = result.scalar_one()
    created = meeting.id == new_id
    logger.info(
        "Meeting %s %s (%s:%s)",
        str(meeting.id)[:8], "created" if created else "updated",
        event.platform, event.platform_meeting_id[:40],
        extra={"meeting_id": str(meeting.id)},
    )
    return meeting, created


async def get_meeting(db: AsyncSession, meeting_id: uuid.UUID) -> Optional[Meeting]:
    result = await db.execute(
        select(Meeting).where(Meeting.id == meeting_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reopen_meeting(db: AsyncSession, meeting_id: uuid.UUID) -> bool:
    """
    failed -> pending, resetting the attempt counter of a transcript that is
    not ready yet. Returns False when the meeting is not failed.
    """
    if not await transition(db, meeting_id, MeetingStatus.PENDING):
        return False
    await db.execute(
        update(Transcript)
        .where(Transcript.meeting_id == meeting_id, Transcript.status != "ready")
        .values(status="pending", fetch_attempts=0, last_fetch_error=None)
        .execution_options(synchronize_session=False)
    )
    return True


async def reprocess_meeting(db: AsyncSession, meeting_id: uuid.UUID, queue=None) -> Optional[Meeting]:
    """
    Operator action: reopen a failed meeting and queue retrieval again from
    the stored transcript pointer.
    Returns None when the meeting is missing or not failed.
    """
    from recapflow.services.transcript_queue import get_transcript_queue

    meeting = await get_meeting(db, meeting_id)
    if meeting is None or meeting.status != MeetingStatus.FAILED:
        return None
    if not meeting.transcript_source:
        raise ValueError("Meeting has no transcript source to reprocess from")

    if not await reopen_meeting(db, meeting_id):
        return None
    queue = queue or get_transcript_queue()
    await queue.enqueue(db, meeting_id, meeting.transcript_source)

    logger.info("Meeting %s queued for reprocessing", str(meeting_id)[:8], extra={"meeting_id": str(meeting_id)})
    return await get_meeting(db, meeting_id)
