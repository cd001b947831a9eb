"""
Transcript fetch, parse and store - one attempt per call.

Attempt accounting lives on the Transcript row (fetch_attempts), so the same
ceiling applies whether the attempt runs inline in a webhook request or in a
background job.

Failure classification:
- not ready yet / transient (404, processing, timeout, 429, 5xx)
    -> transcript back to pending, caller retries after an exponential delay
       (initial * 2^(attempt-1), capped)
- anything else (auth failure, malformed response)
    -> transcript failed, meeting failed, no retry
- attempt ceiling reached
    -> transcript failed ("Max retry attempts exceeded"), meeting failed
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.database import dialect_insert
from recapflow.errors import TranscriptFetchError, TranscriptNotReadyError, is_not_ready_message
from recapflow.models.meeting import Meeting
from recapflow.models.transcript import Transcript
from recapflow.services.meeting_state import MeetingStatus, mark_failed, set_step, transition
from recapflow.services.meetings import get_meeting
from recapflow.transcripts.downloader import CaptionDownloader
from recapflow.transcripts.vtt_parser import parse_vtt

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_ERROR = "Max retry attempts exceeded"


class TranscriptStatus:
    PENDING = "pending"
    FETCHING = "fetching"
    READY = "ready"
    FAILED = "failed"


@dataclass
class FetchResult:
    status: str  # ready, pending, failed
    transcript_id: Optional[str] = None
    error: Optional[str] = None
    retry_after_seconds: Optional[int] = None

    @property
    def is_ready(self) -> bool:
        return self.status == TranscriptStatus.READY

    @property
    def should_retry(self) -> bool:
        return self.status == TranscriptStatus.PENDING


class TranscriptFetcher:
    """Downloads, parses and stores a meeting transcript."""

    def __init__(
        self,
        downloader: Optional[CaptionDownloader] = None,
        max_retries: int = 3,
        initial_delay_seconds: int = 120,
        max_delay_seconds: int = 600,
    ):
        self.downloader = downloader or CaptionDownloader()
        self.max_retries = max_retries
        self.initial_delay_seconds = initial_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    def backoff_seconds(self, attempt: int) -> int:
        """Delay before the next attempt after `attempt` failed."""
        delay = self.initial_delay_seconds * (2 ** max(attempt - 1, 0))
        return min(delay, self.max_delay_seconds)

    async def _get_or_create(self, db: AsyncSession, meeting: Meeting) -> Transcript:
        query = (
            select(Transcript)
            .where(Transcript.meeting_id == meeting.id)
            .execution_options(populate_existing=True)
        )
        transcript = (await db.execute(query)).scalar_one_or_none()
        if transcript is not None:
            return transcript

        # ON CONFLICT DO NOTHING: a concurrent attempt may create it first
        insert = dialect_insert(db)
        await db.execute(
            insert(Transcript)
            .values(
                id=uuid.uuid4(),
                meeting_id=meeting.id,
                platform=meeting.platform,
                status=TranscriptStatus.PENDING,
                fetch_attempts=0,
                word_count=0,
            )
            .on_conflict_do_nothing(index_elements=["meeting_id"])
        )
        return (await db.execute(query)).scalar_one()

    async def fetch(
        self,
        db: AsyncSession,
        meeting_id: uuid.UUID,
        source,
        commit_attempt: bool = False,
    ) -> FetchResult:
        """
        Run one fetch attempt for a meeting's transcript.
        commit_attempt commits the attempt count before downloading, so an
        attempt cut short by the caller's time budget is still counted.
        """
        meeting = await get_meeting(db, meeting_id)
        if meeting is None:
            return FetchResult(TranscriptStatus.FAILED, error="Meeting not found")
        if meeting.status == MeetingStatus.FAILED:
            return FetchResult(TranscriptStatus.FAILED, error="Meeting is failed; reprocess required")

        transcript = await self._get_or_create(db, meeting)
        if transcript.status == TranscriptStatus.READY:
            logger.info("Transcript for meeting %s already ready, skipping fetch", str(meeting.id)[:8])
            # Re-align a reprocessed meeting; no-op for ready/completed
            await transition(db, meeting.id, MeetingStatus.READY, step="transcript_stored")
            return FetchResult(TranscriptStatus.READY, transcript_id=str(transcript.id))

        if transcript.fetch_attempts >= self.max_retries:
            transcript.status = TranscriptStatus.FAILED
            transcript.last_fetch_error = MAX_ATTEMPTS_ERROR
            await db.flush()
            await mark_failed(db, meeting.id, f"Transcript fetch failed: {MAX_ATTEMPTS_ERROR}")
            return FetchResult(TranscriptStatus.FAILED, transcript_id=str(transcript.id), error=MAX_ATTEMPTS_ERROR)

        transcript.fetch_attempts = transcript.fetch_attempts + 1
        transcript.status = TranscriptStatus.FETCHING
        attempt = transcript.fetch_attempts
        await db.flush()
        await transition(db, meeting.id, MeetingStatus.PROCESSING, step="transcript_download")
        if commit_attempt:
            await db.commit()

        logger.info(
            "Fetching transcript for meeting %s (attempt %d/%d)",
            str(meeting.id)[:8], attempt, self.max_retries,
            extra={"meeting_id": str(meeting.id)},
        )

        try:
            caption_text = await self.downloader.download(source)
            await set_step(db, meeting.id, "transcript_parse")
            parsed = parse_vtt(caption_text)
            if not parsed.segments:
                raise TranscriptNotReadyError("Transcript contains no caption cues yet")
        except Exception as e:
            retryable = (
                e.retryable if isinstance(e, TranscriptFetchError) else is_not_ready_message(str(e))
            )
            return await self._record_failure(db, meeting, transcript, attempt, e, retryable)

        transcript.content = parsed.full_text
        transcript.raw_caption_content = caption_text
        transcript.speaker_segments = parsed.segments_as_dicts()
        transcript.word_count = parsed.word_count
        transcript.status = TranscriptStatus.READY
        transcript.last_fetch_error = None
        await db.flush()
        await transition(db, meeting.id, MeetingStatus.READY, step="transcript_stored")

        logger.info(
            "Transcript stored for meeting %s: %d segments, %d words",
            str(meeting.id)[:8], len(parsed.segments), parsed.word_count,
            extra={"meeting_id": str(meeting.id)},
        )
        return FetchResult(TranscriptStatus.READY, transcript_id=str(transcript.id))

    async def record_timeout(self, db: AsyncSession, meeting_id: uuid.UUID, message: str) -> int:
        """
        Mark an attempt abandoned by a time budget as a retryable failure.
        Returns the attempts counted so far.
        """
        transcript = (
            await db.execute(
                select(Transcript)
                .where(Transcript.meeting_id == meeting_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if transcript is None:
            return 0
        if transcript.status == TranscriptStatus.FETCHING:
            transcript.status = TranscriptStatus.PENDING
            transcript.last_fetch_error = message[:2000]
            await db.flush()
        return transcript.fetch_attempts

    async def _record_failure(
        self,
        db: AsyncSession,
        meeting: Meeting,
        transcript: Transcript,
        attempt: int,
        error: Exception,
        retryable: bool,
    ) -> FetchResult:
        message = str(error)[:2000] or type(error).__name__
        transcript.last_fetch_error = message

        if retryable:
            transcript.status = TranscriptStatus.PENDING
            await db.flush()
            retry_after = self.backoff_seconds(attempt)
            logger.warning(
                "Transcript not ready for meeting %s (attempt %d/%d), retry in %ds: %s",
                str(meeting.id)[:8], attempt, self.max_retries, retry_after, message[:200],
                extra={"meeting_id": str(meeting.id)},
            )
            return FetchResult(
                TranscriptStatus.PENDING,
                transcript_id=str(transcript.id),
                error=message,
                retry_after_seconds=retry_after,
            )

        transcript.status = TranscriptStatus.FAILED
        await db.flush()
        await mark_failed(db, meeting.id, f"Transcript fetch failed: {message}")
        return FetchResult(TranscriptStatus.FAILED, transcript_id=str(transcript.id), error=message)


def get_transcript_fetcher(downloader: Optional[CaptionDownloader] = None) -> TranscriptFetcher:
    """Fetcher configured from settings."""
    from recapflow.config import get_settings
    settings = get_settings()
    return TranscriptFetcher(
        downloader=downloader,
        max_retries=settings.transcript_fetch_max_retries,
        initial_delay_seconds=settings.transcript_fetch_initial_delay_seconds,
        max_delay_seconds=settings.transcript_fetch_max_delay_seconds,
    )
