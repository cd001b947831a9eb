"""
Operator API - webhook failure metrics, dead letter queue, meeting inspection
and reprocessing, transcript queue stats.

All endpoints require a Bearer JWT (HS256, operator_jwt_secret) carrying
role=operator.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.database import get_db
from recapflow.models.transcript import Transcript
from recapflow.models.transcript_job import TranscriptJob
from recapflow.services.meetings import get_meeting, reprocess_meeting
from recapflow.services.transcript_queue import get_transcript_queue, job_key_for
from recapflow.services.webhook_retry import get_retry_manager

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/admin", tags=["admin"])
bearer_scheme = HTTPBearer()


async def get_current_operator(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
) -> dict:
    """Dependency to verify an operator JWT Bearer token."""
    import jwt as pyjwt
    from recapflow.config import get_settings
    settings = get_settings()

    if not settings.operator_jwt_secret:
        raise HTTPException(status_code=401, detail="Operator auth not configured")

    try:
        payload = pyjwt.decode(
            credentials.credentials,
            settings.operator_jwt_secret,
            algorithms=["HS256"],
        )
    except pyjwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except pyjwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    if payload.get("role") != "operator":
        raise HTTPException(status_code=403, detail="Operator access required")
    return payload


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(status_code=400, detail=f"Invalid {label} id")


def _serialize_dead_letter(entry) -> dict:
    return {
        "id": str(entry.id),
        "webhook_failure_id": str(entry.webhook_failure_id) if entry.webhook_failure_id else None,
        "platform": entry.platform,
        "event_type": entry.event_type,
        "error": entry.error,
        "total_attempts": entry.total_attempts,
        "failure_history": entry.failure_history or [],
        "alert_sent": entry.alert_sent,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def _serialize_meeting(meeting) -> dict:
    return {
        "id": str(meeting.id),
        "platform": meeting.platform,
        "platform_meeting_id": meeting.platform_meeting_id,
        "host_email": meeting.host_email,
        "topic": meeting.topic,
        "start_time": meeting.start_time.isoformat() if meeting.start_time else None,
        "end_time": meeting.end_time.isoformat() if meeting.end_time else None,
        "duration_minutes": meeting.duration_minutes,
        "status": meeting.status,
        "processing_step": meeting.processing_step,
        "processing_progress": meeting.processing_progress,
        "error_message": meeting.error_message,
        "created_at": meeting.created_at.isoformat() if meeting.created_at else None,
        "updated_at": meeting.updated_at.isoformat() if meeting.updated_at else None,
    }


@router.get("/webhooks/metrics")
async def webhook_metrics(
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """Webhook failure counts by status and platform."""
    return await get_retry_manager().get_metrics(db)


@router.get("/dead-letters")
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    entries = await get_retry_manager().get_unresolved_dead_letters(db, limit=limit)
    return {"items": [_serialize_dead_letter(e) for e in entries], "count": len(entries)}


@router.post("/dead-letters/{dead_letter_id}/retry")
async def retry_dead_letter(
    dead_letter_id: str,
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """Requeue a dead-lettered payload for the retry worker."""
    entry_id = _parse_uuid(dead_letter_id, "dead letter")
    failure = await get_retry_manager().retry_dead_letter(db, entry_id)
    if failure is None:
        raise HTTPException(status_code=404, detail="Dead letter entry not found")
    logger.info("Operator %s retried dead letter %s", operator.get("sub", "?"), dead_letter_id[:8])
    return {
        "status": "requeued",
        "failure_id": str(failure.id),
        "next_retry_at": failure.next_retry_at.isoformat() if failure.next_retry_at else None,
    }


@router.get("/meetings/{meeting_id}")
async def get_meeting_detail(
    meeting_id: str,
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """Meeting state with transcript and queue job summary."""
    meeting_uuid = _parse_uuid(meeting_id, "meeting")
    meeting = await get_meeting(db, meeting_uuid)
    if meeting is None:
        raise HTTPException(status_code=404, detail="Meeting not found")

    transcript = (
        await db.execute(select(Transcript).where(Transcript.meeting_id == meeting_uuid))
    ).scalar_one_or_none()
    job = (
        await db.execute(select(TranscriptJob).where(TranscriptJob.job_key == job_key_for(meeting_uuid)))
    ).scalar_one_or_none()

    detail = _serialize_meeting(meeting)
    detail["transcript"] = None if transcript is None else {
        "id": str(transcript.id),
        "status": transcript.status,
        "fetch_attempts": transcript.fetch_attempts,
        "word_count": transcript.word_count,
        "last_fetch_error": transcript.last_fetch_error,
    }
    detail["job"] = None if job is None else {
        "id": str(job.id),
        "status": job.status,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "scheduled_at": job.scheduled_at.isoformat() if job.scheduled_at else None,
        "error_message": job.error_message,
    }
    return detail


@router.post("/meetings/{meeting_id}/reprocess")
async def reprocess(
    meeting_id: str,
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    """Move a failed meeting back to pending and queue transcript retrieval."""
    meeting_uuid = _parse_uuid(meeting_id, "meeting")
    if await get_meeting(db, meeting_uuid) is None:
        raise HTTPException(status_code=404, detail="Meeting not found")
    queue = get_transcript_queue()
    try:
        meeting = await reprocess_meeting(db, meeting_uuid, queue=queue)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if meeting is None:
        raise HTTPException(status_code=409, detail="Only failed meetings can be reprocessed")
    await db.commit()
    await queue.notify()
    logger.info("Operator %s reprocessed meeting %s", operator.get("sub", "?"), meeting_id[:8])
    return _serialize_meeting(meeting)


@router.get("/queue/stats")
async def queue_stats(
    db: AsyncSession = Depends(get_db),
    operator: dict = Depends(get_current_operator),
):
    return await get_transcript_queue().stats(db)
