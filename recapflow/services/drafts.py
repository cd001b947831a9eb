"""
Draft-generation collaborator.

The drafting service is opaque: it receives
    {meetingId, transcriptId, context: {topic, date, hostName, transcriptText}}
and answers
    {success, draftId?, subject?, qualityScore?, error?}.

A draft failure is non-fatal. The meeting moves ready -> completed either way
and the failure is only logged.
"""
import logging
import uuid
from typing import Optional

import httpx
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.models.meeting import Meeting
from recapflow.models.transcript import Transcript
from recapflow.services.meeting_state import MeetingStatus, set_step, transition
from recapflow.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 200_000


class DraftContext(BaseModel):
    topic: Optional[str] = None
    date: Optional[str] = None
    hostName: Optional[str] = None
    transcriptText: str = ""


class DraftRequest(BaseModel):
    meetingId: str
    transcriptId: str
    context: DraftContext


class DraftResult(BaseModel):
    success: bool
    draftId: Optional[str] = None
    subject: Optional[str] = None
    qualityScore: Optional[float] = None
    error: Optional[str] = None


class DraftClient:
    """HTTP client for the drafting service."""

    def __init__(self, url: str = "", api_key: str = "", timeout: float = 60.0):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def generate(self, request: DraftRequest) -> DraftResult:
        if not self.url:
            return DraftResult(success=False, error="Draft service not configured")

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        async def _post() -> httpx.Response:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.post(self.url, json=request.model_dump(), headers=headers)

        try:
            response = await with_timeout(_post(), self.timeout + 1, "draft generation")
            response.raise_for_status()
            return DraftResult.model_validate(response.json())
        except Exception as e:
            return DraftResult(success=False, error=str(e)[:500] or type(e).__name__)


def get_draft_client() -> DraftClient:
    from recapflow.config import get_settings
    settings = get_settings()
    return DraftClient(
        url=settings.draft_service_url,
        api_key=settings.draft_service_api_key,
        timeout=settings.draft_service_timeout_seconds,
    )


def _meeting_date(meeting: Meeting) -> Optional[str]:
    moment = meeting.start_time or meeting.created_at
    return moment.isoformat() if moment else None


def _host_name(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    local = email.split("@", 1)[0]
    return " ".join(part.capitalize() for part in local.replace("_", ".").split(".") if part)


async def generate_draft_and_complete(
    db: AsyncSession,
    meeting_id: uuid.UUID,
    client: Optional[DraftClient] = None,
) -> Optional[DraftResult]:
    """
    Invoke the drafting collaborator for a ready meeting, then mark it completed.
    Returns None when the meeting is not in the ready state.
    """
    meeting = (
        await db.execute(
            select(Meeting).where(Meeting.id == meeting_id).execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if meeting is None or meeting.status != MeetingStatus.READY:
        return None
    transcript = (
        await db.execute(select(Transcript).where(Transcript.meeting_id == meeting_id))
    ).scalar_one_or_none()
    if transcript is None:
        return None

    await set_step(db, meeting_id, "draft_generation")
    client = client or get_draft_client()
    request = DraftRequest(
        meetingId=str(meeting.id),
        transcriptId=str(transcript.id),
        context=DraftContext(
            topic=meeting.topic,
            date=_meeting_date(meeting),
            hostName=_host_name(meeting.host_email),
            transcriptText=(transcript.content or "")[:MAX_TRANSCRIPT_CHARS],
        ),
    )
    result = await client.generate(request)

    if result.success:
        logger.info(
            "Draft generated for meeting %s: draft=%s quality=%s",
            str(meeting.id)[:8], (result.draftId or "")[:8], result.qualityScore,
            extra={"meeting_id": str(meeting.id)},
        )
    else:
        logger.warning(
            "Draft generation failed for meeting %s: %s",
            str(meeting.id)[:8], result.error,
            extra={"meeting_id": str(meeting.id)},
        )

    await transition(db, meeting.id, MeetingStatus.COMPLETED)
    return result
