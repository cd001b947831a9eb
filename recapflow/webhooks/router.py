"""
Event router - the single dispatch point for canonical webhook events.

receive(): idempotency lock -> RawEvent audit row -> route()
route():   (platform, action) -> handler -> HandlerResult

Handlers upsert the canonical Meeting and start transcript retrieval:
Zoom transcripts are always queued (signed download + parse can outlast the
request budget); Meet and Teams are fetched inline within a bounded budget
and handed to the queue when the platform is not ready yet.

Handler failures never surface as request errors. Validation failures mark
the RawEvent failed; anything else is also recorded with the retry manager
(except while replaying a recorded failure).
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.errors import OperationTimeoutError, PermanentEventError
from recapflow.models.raw_event import RawEvent
from recapflow.models.webhook_failure import WebhookFailure
from recapflow.schemas.events import CanonicalEvent, EventAction, HandlerResult, Platform, WebhookAck
from recapflow.services.meeting_state import STUCK_STEP, MeetingStatus
from recapflow.services.meetings import reopen_meeting, upsert_meeting
from recapflow.utils.logging import get_correlation_id, log_context
from recapflow.utils.timeouts import with_timeout
from recapflow.webhooks.meet import normalize_meet_event
from recapflow.webhooks.teams import normalize_teams_notification, split_notifications
from recapflow.webhooks.zoom import normalize_zoom_event

logger = logging.getLogger(__name__)


class RawEventStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


INLINE_PLATFORMS = (Platform.GOOGLE_MEET, Platform.MICROSOFT_TEAMS)

# A delivery still processing after this long is presumed crashed
STALE_PROCESSING_SECONDS = 120

Handler = Callable[[AsyncSession, CanonicalEvent], Awaitable[HandlerResult]]


def _is_stale(since) -> bool:
    """True when a lock or RawEvent timestamp is older than STALE_PROCESSING_SECONDS."""
    if since is None:
        return True
    if isinstance(since, str):
        try:
            since = datetime.fromisoformat(since)
        except ValueError:
            return True
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - since > timedelta(seconds=STALE_PROCESSING_SECONDS)


def normalize_payload(platform: str, payload: dict) -> list[CanonicalEvent]:
    """Re-derive canonical events from a stored platform payload."""
    if platform == Platform.ZOOM:
        return [normalize_zoom_event(payload)]
    if platform == Platform.GOOGLE_MEET:
        return [normalize_meet_event(payload)]
    if platform == Platform.MICROSOFT_TEAMS:
        return [normalize_teams_notification(n) for n in split_notifications(payload)]
    raise PermanentEventError(f"Unknown platform: {platform}")


class EventRouter:
    """Routes canonical events to platform handlers."""

    def __init__(
        self,
        guard=None,
        retry_manager=None,
        queue=None,
        fetcher=None,
        inline_budget_seconds: Optional[float] = None,
    ):
        self._guard = guard
        self._retry_manager = retry_manager
        self._queue = queue
        self._fetcher = fetcher
        self._inline_budget_seconds = inline_budget_seconds
        self._notify_queue = False

        self._handlers: dict[tuple[str, str], Handler] = {
            (Platform.ZOOM, EventAction.CONFERENCE_ENDED): self.handle_conference_ended,
            (Platform.ZOOM, EventAction.RECORDING_READY): self.handle_recording_ready,
            (Platform.ZOOM, EventAction.TRANSCRIPT_READY): self.handle_transcript_ready,
            (Platform.GOOGLE_MEET, EventAction.CONFERENCE_ENDED): self.handle_conference_ended,
            (Platform.GOOGLE_MEET, EventAction.TRANSCRIPT_READY): self.handle_transcript_ready,
            (Platform.MICROSOFT_TEAMS, EventAction.RECORDING_READY): self.handle_recording_ready,
            (Platform.MICROSOFT_TEAMS, EventAction.TRANSCRIPT_READY): self.handle_transcript_ready,
        }

    # Collaborators resolve lazily so tests can inject fakes

    @property
    def guard(self):
        if self._guard is None:
            from recapflow.utils.idempotency import get_idempotency_guard
            self._guard = get_idempotency_guard()
        return self._guard

    @property
    def retry_manager(self):
        if self._retry_manager is None:
            from recapflow.services.webhook_retry import get_retry_manager
            self._retry_manager = get_retry_manager()
        return self._retry_manager

    @property
    def queue(self):
        if self._queue is None:
            from recapflow.services.transcript_queue import get_transcript_queue
            self._queue = get_transcript_queue()
        return self._queue

    @property
    def fetcher(self):
        if self._fetcher is None:
            from recapflow.transcripts.fetcher import get_transcript_fetcher
            self._fetcher = get_transcript_fetcher()
        return self._fetcher

    @property
    def inline_budget_seconds(self) -> float:
        if self._inline_budget_seconds is None:
            from recapflow.config import get_settings
            self._inline_budget_seconds = get_settings().inline_fetch_budget_seconds
        return self._inline_budget_seconds

    async def receive(self, db: AsyncSession, events: list[CanonicalEvent]) -> WebhookAck:
        """Lock, record and route each event of one delivery."""
        ack = WebhookAck()
        for event in events:
            with log_context(platform=event.platform, event_type=event.event_type):
                claimed, raw_event = await self._claim(db, event)
                if not claimed:
                    ack.duplicate = True
                    ack.results.append(HandlerResult(action="skipped", reason="duplicate event"))
                    continue

                # A failed RawEvent already has a recorded failure to retry
                replay = raw_event is not None and raw_event.status == RawEventStatus.FAILED
                try:
                    if raw_event is None:
                        raw_event = await self.record_raw_event(db, event)
                    result = await self.route(db, raw_event, event, replay=replay)
                except Exception:
                    # Nothing durable may exist yet; let the sender's redelivery through
                    await self.guard.remove_lock(event.lock_key, event.platform)
                    raise
                ack.results.append(result)

                if result.action != "failed":
                    await self.guard.mark_processed(
                        event.lock_key, event.platform,
                        metadata={"raw_event_id": result.raw_event_id, "meeting_id": result.meeting_id},
                    )

        await self.flush_notifications()
        return ack

    async def _claim(self, db: AsyncSession, event: CanonicalEvent) -> tuple[bool, Optional[RawEvent]]:
        """
        Take the event's lock. A held lock is a duplicate unless its earlier
        delivery failed or stalled; then the lock is taken over and the
        earlier RawEvent (if any) is routed again.
        Returns (claimed, raw_event_to_reuse).
        """
        metadata = {"event_type": event.event_type, "external_event_id": event.external_event_id}
        if await self.guard.acquire_lock(event.lock_key, event.platform, metadata=metadata):
            return True, None

        existing = (
            await db.execute(
                select(RawEvent)
                .where(
                    RawEvent.platform == event.platform,
                    RawEvent.external_event_id == event.external_event_id,
                )
                .order_by(RawEvent.created_at.desc())
                .limit(1)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if existing is None:
            lock = await self.guard.get_metadata(event.lock_key, event.platform) or {}
            if lock.get("status") == "processed" or not _is_stale(lock.get("acquired_at")):
                return False, None
        elif existing.status == RawEventStatus.PROCESSED:
            return False, None
        elif existing.status != RawEventStatus.FAILED and not _is_stale(existing.updated_at or existing.created_at):
            return False, None

        logger.warning(
            "Taking over idempotency lock for %s (previous delivery %s)",
            event.lock_key[:80], existing.status if existing is not None else "never recorded",
        )
        await self.guard.remove_lock(event.lock_key, event.platform)
        if not await self.guard.acquire_lock(event.lock_key, event.platform, metadata=metadata):
            return False, None
        return True, existing

    async def flush_notifications(self) -> None:
        if self._notify_queue:
            self._notify_queue = False
            await self.queue.notify()

    async def record_raw_event(
        self,
        db: AsyncSession,
        event: CanonicalEvent,
        external_event_id: Optional[str] = None,
    ) -> RawEvent:
        raw_event = RawEvent(
            platform=event.platform,
            event_type=event.event_type,
            external_event_id=external_event_id or event.external_event_id,
            payload=event.payload,
            status=RawEventStatus.PENDING,
            correlation_id=get_correlation_id(),
        )
        db.add(raw_event)
        await db.flush()
        return raw_event

    async def route(
        self,
        db: AsyncSession,
        raw_event: RawEvent,
        event: CanonicalEvent,
        replay: bool = False,
    ) -> HandlerResult:
        """Dispatch one recorded event. Commits its own outcome."""
        raw_event_id = raw_event.id

        if raw_event.status == RawEventStatus.PROCESSED:
            return HandlerResult(action="skipped", raw_event_id=str(raw_event_id), reason="already processed")

        handler = self._handlers.get((event.platform, event.action)) if event.action else None
        if handler is None:
            raw_event.status = RawEventStatus.PROCESSED
            raw_event.processed_at = datetime.now(timezone.utc)
            await db.commit()
            logger.info("Unhandled %s event type %s acknowledged", event.platform, event.event_type)
            return HandlerResult(action="skipped", raw_event_id=str(raw_event_id), reason="unhandled event type")

        # The processing marker survives a handler rollback
        raw_event.status = RawEventStatus.PROCESSING
        await db.commit()

        with log_context(raw_event_id=str(raw_event_id)):
            try:
                result = await handler(db, event)
            except PermanentEventError as e:
                await db.rollback()
                logger.warning("Rejected %s %s: %s", event.platform, event.event_type, str(e))
                await self._mark_raw_event(db, raw_event_id, RawEventStatus.FAILED, str(e))
                await db.commit()
                return HandlerResult(action="failed", raw_event_id=str(raw_event_id), error=str(e))
            except Exception as e:
                await db.rollback()
                error = str(e) or type(e).__name__
                logger.error(
                    "Handler failed for %s %s: %s", event.platform, event.event_type, error,
                    exc_info=True,
                )
                await self._mark_raw_event(db, raw_event_id, RawEventStatus.FAILED, error)
                if not replay:
                    await self.retry_manager.record_failure(
                        db, event.platform, event.event_type, event.payload, error,
                    )
                await db.commit()
                return HandlerResult(action="failed", raw_event_id=str(raw_event_id), error=error)

            await self._mark_raw_event(db, raw_event_id, RawEventStatus.PROCESSED)
            await db.commit()

        result.raw_event_id = str(raw_event_id)
        logger.info(
            "Routed %s %s -> %s (meeting=%s)",
            event.platform, event.event_type, result.action,
            (result.meeting_id or "-")[:8],
        )
        return result

    async def _mark_raw_event(
        self,
        db: AsyncSession,
        raw_event_id: uuid.UUID,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        raw_event = (
            await db.execute(
                select(RawEvent).where(RawEvent.id == raw_event_id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        raw_event.status = status
        raw_event.error_message = error[:2000] if error else None
        raw_event.processed_at = datetime.now(timezone.utc)
        await db.flush()

    async def replay_failure(self, db: AsyncSession, failure: WebhookFailure) -> HandlerResult:
        """Re-run a recorded failure's payload. Never records new failures."""
        failure_id = failure.id
        attempt = failure.attempts + 1
        try:
            events = normalize_payload(failure.platform, failure.payload)
        except PermanentEventError as e:
            return HandlerResult(action="failed", error=str(e))

        outcome = HandlerResult(action="skipped", reason="nothing to replay")
        for index, event in enumerate(events):
            suffix = f"-{index}" if len(events) > 1 else ""
            raw_event = await self.record_raw_event(
                db, event, external_event_id=f"retry-{failure_id}-{attempt}{suffix}",
            )
            result = await self.route(db, raw_event, event, replay=True)
            if result.action == "failed":
                outcome = result
                break
            outcome = result

        await self.flush_notifications()
        return outcome

    # Handlers

    # Ids are read before retrieval: an inline timeout rolls back and expires ORM state

    async def handle_conference_ended(self, db: AsyncSession, event: CanonicalEvent) -> HandlerResult:
        meeting, created = await self._upsert(db, event)
        meeting_id = meeting.id
        reason = None
        if event.transcript_source is not None:
            reason = await self._retrieve(db, meeting_id, event)
        return self._result(meeting_id, created, reason)

    async def handle_recording_ready(self, db: AsyncSession, event: CanonicalEvent) -> HandlerResult:
        meeting, created = await self._upsert(db, event)
        meeting_id = meeting.id
        if event.transcript_source is None:
            return self._result(meeting_id, created, "no transcript in recording")
        reason = await self._retrieve(db, meeting_id, event)
        return self._result(meeting_id, created, reason)

    async def handle_transcript_ready(self, db: AsyncSession, event: CanonicalEvent) -> HandlerResult:
        if event.transcript_source is None:
            return HandlerResult(action="skipped", reason="no completed transcript file")
        if event.platform == Platform.MICROSOFT_TEAMS and not event.topic:
            event = await self._with_teams_subject(event)
        meeting, created = await self._upsert(db, event)
        meeting_id = meeting.id
        reason = await self._retrieve(db, meeting_id, event)
        return self._result(meeting_id, created, reason)

    async def _with_teams_subject(self, event: CanonicalEvent) -> CanonicalEvent:
        """Best-effort Graph lookup of the meeting subject, used as the topic."""
        source = event.transcript_source
        if not (source.user_id and source.meeting_id):
            return event
        try:
            details = await with_timeout(
                self.fetcher.downloader.teams.get_online_meeting(source.user_id, source.meeting_id),
                self.inline_budget_seconds,
                "graph online meeting",
            )
        except Exception as e:
            logger.warning("Teams meeting details unavailable for %s: %s", source.meeting_id[:40], str(e))
            return event
        subject = (details or {}).get("subject")
        return event.model_copy(update={"topic": subject}) if subject else event

    async def _upsert(self, db: AsyncSession, event: CanonicalEvent):
        if not event.platform_meeting_id:
            raise PermanentEventError(f"{event.event_type} has no meeting identifier")
        return await upsert_meeting(db, event)

    @staticmethod
    def _result(meeting_id: uuid.UUID, created: bool, reason: Optional[str] = None) -> HandlerResult:
        return HandlerResult(
            action="created" if created else "updated",
            meeting_id=str(meeting_id),
            reason=reason,
        )

    async def _retrieve(self, db: AsyncSession, meeting_id: uuid.UUID, event: CanonicalEvent) -> str:
        """Start transcript retrieval. Returns a short outcome description."""
        from recapflow.services.meetings import get_meeting
        meeting = await get_meeting(db, meeting_id)
        if meeting.status == MeetingStatus.COMPLETED:
            return "meeting already completed"
        if meeting.status == MeetingStatus.FAILED:
            # Only a sweeper timeout is undone by a newly arrived transcript pointer
            if meeting.processing_step != STUCK_STEP or not await reopen_meeting(db, meeting_id):
                return "meeting failed; reprocess required"
            logger.info("Meeting %s reopened by a new transcript pointer", str(meeting_id)[:8])

        source = event.transcript_source
        if event.platform not in INLINE_PLATFORMS:
            await self._enqueue(db, meeting_id, source, 0)
            return "transcript queued"

        # Meeting row must survive a timed-out inline attempt
        await db.commit()
        try:
            result = await with_timeout(
                self.fetcher.fetch(db, meeting_id, source, commit_attempt=True),
                self.inline_budget_seconds,
                "inline transcript fetch",
            )
        except OperationTimeoutError as e:
            await db.rollback()
            attempts = await self.fetcher.record_timeout(db, meeting_id, str(e))
            logger.warning(
                "Inline fetch for meeting %s exceeded budget (attempt %d): %s",
                str(meeting_id)[:8], attempts, str(e),
            )
            await self._enqueue(db, meeting_id, source, self.fetcher.backoff_seconds(max(attempts, 1)))
            return "inline fetch timed out; transcript queued"

        if result.is_ready:
            # Drafting runs in the background
            await self._enqueue(db, meeting_id, source, 0)
            return "transcript stored"
        if result.should_retry:
            await self._enqueue(db, meeting_id, source, result.retry_after_seconds or 0)
            return "transcript not ready; queued"
        return f"transcript fetch failed: {result.error}"

    async def _enqueue(self, db: AsyncSession, meeting_id: uuid.UUID, source, delay_seconds: int) -> None:
        _, scheduled = await self.queue.enqueue(db, meeting_id, source, delay_seconds=delay_seconds)
        if scheduled and delay_seconds == 0:
            self._notify_queue = True


def get_event_router() -> EventRouter:
    """FastAPI dependency - a router with settings-configured collaborators."""
    return EventRouter()
