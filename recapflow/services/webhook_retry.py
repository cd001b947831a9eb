"""
Webhook retry manager - bounded retries for handler failures and the
dead letter queue behind them.

A failed handler run is recorded with the replayable payload and retried on
an increasing delay ladder (1m, 5m, 15m by default). Once the attempt budget
is spent the failure is escalated to a DeadLetterEntry exactly once, and the
operator alert for that entry is sent exactly once.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from sqlalchemy import event, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.models.webhook_failure import DeadLetterEntry, WebhookFailure
from recapflow.database import dialect_insert
from recapflow.utils.alerting import send_dead_letter_alert
from recapflow.utils.background import spawn
from recapflow.utils.logging import get_correlation_id

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS_MINUTES = (1, 5, 15)
DEFAULT_MAX_ATTEMPTS = 3
MANUAL_RETRY_ERROR = "Manual retry from dead letter queue"


class FailureStatus:
    PENDING = "pending"
    RETRYING = "retrying"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


def _history_entry(attempt: int, error: str) -> dict:
    return {
        "attempt": attempt,
        "error": error[:2000],
        "at": datetime.now(timezone.utc).isoformat(),
    }


_PENDING_ALERTS = "recapflow_pending_dead_letter_alerts"
_HOOKS_INSTALLED = "recapflow_dead_letter_hooks"


def _send_pending_alerts(session) -> None:
    for payload in session.info.pop(_PENDING_ALERTS, []):
        spawn(send_dead_letter_alert(payload), name=f"dead-letter-alert-{payload['id'][:8]}")


def _drop_pending_alerts(session) -> None:
    dropped = session.info.pop(_PENDING_ALERTS, [])
    if dropped:
        logger.warning("Rolled back %d dead letter alert(s) before delivery", len(dropped))


def _alert_after_commit(db: AsyncSession, payload: dict) -> None:
    """Deliver the alert only once the alert_sent claim is committed."""
    session = db.sync_session
    if not session.info.get(_HOOKS_INSTALLED):
        event.listen(session, "after_commit", _send_pending_alerts)
        event.listen(session, "after_rollback", _drop_pending_alerts)
        session.info[_HOOKS_INSTALLED] = True
    session.info.setdefault(_PENDING_ALERTS, []).append(payload)


class WebhookRetryManager:
    """Schedules webhook replays and escalates exhausted ones."""

    def __init__(
        self,
        retry_delays_minutes: Sequence[int] = DEFAULT_RETRY_DELAYS_MINUTES,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        if not retry_delays_minutes:
            raise ValueError("retry_delays_minutes must not be empty")
        self.retry_delays_minutes = list(retry_delays_minutes)
        self.max_attempts = max_attempts

    def retry_delay(self, attempts: int) -> timedelta:
        """Delay after the given number of attempts, clamped to the last rung."""
        index = min(max(attempts - 1, 0), len(self.retry_delays_minutes) - 1)
        return timedelta(minutes=self.retry_delays_minutes[index])

    async def record_failure(
        self,
        db: AsyncSession,
        platform: str,
        event_type: str,
        payload: dict,
        error: str,
    ) -> WebhookFailure:
        """Record a first failure and schedule its first retry."""
        now = datetime.now(timezone.utc)
        failure = WebhookFailure(
            platform=platform,
            event_type=event_type,
            payload=payload,
            error=error[:2000],
            attempts=1,
            max_attempts=self.max_attempts,
            next_retry_at=now + self.retry_delay(1),
            last_attempt_at=now,
            failure_history=[_history_entry(1, error)],
            status=FailureStatus.PENDING,
            correlation_id=get_correlation_id(),
        )
        db.add(failure)
        await db.flush()

        logger.warning(
            "Webhook failure recorded: %s/%s id=%s retry_at=%s error=%s",
            platform, event_type, str(failure.id)[:8],
            failure.next_retry_at.isoformat(), error[:100],
            extra={"platform": platform, "event_type": event_type, "failure_id": str(failure.id)},
        )
        return failure

    async def get_due_for_retry(self, db: AsyncSession, limit: int = 10) -> list[WebhookFailure]:
        now = datetime.now(timezone.utc)
        result = await db.execute(
            select(WebhookFailure)
            .where(
                WebhookFailure.status == FailureStatus.PENDING,
                WebhookFailure.next_retry_at <= now,
            )
            .order_by(WebhookFailure.next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_retry_in_progress(self, db: AsyncSession, failure: WebhookFailure) -> None:
        failure.status = FailureStatus.RETRYING
        failure.last_attempt_at = datetime.now(timezone.utc)
        await db.flush()

    async def mark_retry_successful(self, db: AsyncSession, failure: WebhookFailure) -> None:
        failure.status = FailureStatus.COMPLETED
        failure.next_retry_at = None
        await db.flush()
        logger.info(
            "Webhook failure %s resolved after %d attempt(s)",
            str(failure.id)[:8], failure.attempts,
            extra={"failure_id": str(failure.id)},
        )

    async def handle_retry_failure(
        self,
        db: AsyncSession,
        failure: WebhookFailure,
        error: str,
    ) -> Optional[DeadLetterEntry]:
        """
        Count a failed replay. Reschedules on the ladder, or escalates to the
        dead letter queue when the budget is spent (returns the entry).
        """
        attempts = failure.attempts + 1
        failure.attempts = attempts
        failure.error = error[:2000]
        failure.last_attempt_at = datetime.now(timezone.utc)
        # Reassign so the JSON column is flagged dirty
        failure.failure_history = list(failure.failure_history or []) + [_history_entry(attempts, error)]

        if attempts >= failure.max_attempts:
            await db.flush()
            return await self.move_to_dead_letter(db, failure)

        failure.status = FailureStatus.PENDING
        failure.next_retry_at = datetime.now(timezone.utc) + self.retry_delay(attempts)
        await db.flush()
        logger.info(
            "Webhook failure %s retry %d/%d scheduled for %s",
            str(failure.id)[:8], attempts, failure.max_attempts,
            failure.next_retry_at.isoformat(),
            extra={"failure_id": str(failure.id)},
        )
        return None

    async def move_to_dead_letter(self, db: AsyncSession, failure: WebhookFailure) -> DeadLetterEntry:
        """
        Escalate a failure. Safe to call more than once: later calls return
        the existing entry and send nothing.
        """
        query = select(DeadLetterEntry).where(DeadLetterEntry.webhook_failure_id == failure.id)
        existing = (await db.execute(query)).scalar_one_or_none()
        if existing is not None:
            logger.info("Failure %s already dead-lettered as %s", str(failure.id)[:8], str(existing.id)[:8])
            return existing

        insert = dialect_insert(db)
        await db.execute(
            insert(DeadLetterEntry)
            .values(
                id=uuid.uuid4(),
                webhook_failure_id=failure.id,
                platform=failure.platform,
                event_type=failure.event_type,
                payload=failure.payload,
                error=failure.error,
                total_attempts=failure.attempts,
                failure_history=list(failure.failure_history or []),
                resolved=False,
                alert_sent=False,
                created_at=datetime.now(timezone.utc),
            )
            .on_conflict_do_nothing(index_elements=["webhook_failure_id"])
        )
        entry = (await db.execute(query.execution_options(populate_existing=True))).scalar_one()

        failure.status = FailureStatus.DEAD_LETTER
        failure.next_retry_at = None
        await db.flush()

        logger.error(
            "Webhook failure %s moved to dead letter queue after %d attempts: %s",
            str(failure.id)[:8], failure.attempts, failure.error[:100],
            extra={"platform": failure.platform, "failure_id": str(failure.id)},
        )

        # Only the caller that flips alert_sent sends the alert, after its commit
        claimed = await db.execute(
            update(DeadLetterEntry)
            .where(DeadLetterEntry.id == entry.id, DeadLetterEntry.alert_sent.is_(False))
            .values(alert_sent=True)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            entry.alert_sent = True
            _alert_after_commit(db, {
                "id": str(entry.id),
                "platform": entry.platform,
                "eventType": entry.event_type,
                "totalAttempts": entry.total_attempts,
                "error": entry.error,
            })
        return entry

    async def retry_dead_letter(self, db: AsyncSession, dead_letter_id: uuid.UUID) -> Optional[WebhookFailure]:
        """Operator action: requeue a dead-lettered payload as a fresh failure."""
        entry = (
            await db.execute(select(DeadLetterEntry).where(DeadLetterEntry.id == dead_letter_id))
        ).scalar_one_or_none()
        if entry is None:
            return None

        now = datetime.now(timezone.utc)
        failure = WebhookFailure(
            platform=entry.platform,
            event_type=entry.event_type,
            payload=entry.payload,
            error=MANUAL_RETRY_ERROR,
            attempts=0,
            max_attempts=self.max_attempts,
            next_retry_at=now,
            failure_history=[],
            status=FailureStatus.PENDING,
            correlation_id=get_correlation_id(),
        )
        db.add(failure)
        await db.flush()

        entry.resolved = True
        entry.resolved_at = now
        entry.resolution_notes = f"Manually retried as failure {failure.id}"
        await db.flush()

        logger.info(
            "Dead letter %s requeued as failure %s",
            str(entry.id)[:8], str(failure.id)[:8],
            extra={"failure_id": str(failure.id)},
        )
        return failure

    async def get_unresolved_dead_letters(self, db: AsyncSession, limit: int = 50) -> list[DeadLetterEntry]:
        result = await db.execute(
            select(DeadLetterEntry)
            .where(DeadLetterEntry.resolved.is_(False))
            .order_by(DeadLetterEntry.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_metrics(self, db: AsyncSession) -> dict:
        """Failure counts by status and by platform."""
        totals = {
            "total": 0,
            FailureStatus.PENDING: 0,
            FailureStatus.RETRYING: 0,
            FailureStatus.COMPLETED: 0,
            FailureStatus.DEAD_LETTER: 0,
            "unresolved_dead_letters": 0,
        }
        by_platform: dict[str, dict[str, int]] = {}

        rows = await db.execute(
            select(WebhookFailure.platform, WebhookFailure.status, func.count())
            .group_by(WebhookFailure.platform, WebhookFailure.status)
        )
        for platform, status, count in rows.all():
            totals["total"] += count
            if status in totals:
                totals[status] += count
            stats = by_platform.setdefault(platform, {"total": 0, "failed": 0, "dead_lettered": 0})
            stats["total"] += count
            if status != FailureStatus.COMPLETED:
                stats["failed"] += count
            if status == FailureStatus.DEAD_LETTER:
                stats["dead_lettered"] += count

        unresolved = await db.execute(
            select(func.count()).select_from(DeadLetterEntry).where(DeadLetterEntry.resolved.is_(False))
        )
        totals["unresolved_dead_letters"] = unresolved.scalar() or 0

        return {"totals": totals, "by_platform": by_platform}


def get_retry_manager() -> WebhookRetryManager:
    from recapflow.config import get_settings
    settings = get_settings()
    return WebhookRetryManager(
        retry_delays_minutes=settings.webhook_retry_delays_minutes,
        max_attempts=settings.webhook_retry_max_attempts,
    )
