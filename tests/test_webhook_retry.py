"""
Tests for recapflow/services/webhook_retry.py - retry ladder and dead letter queue.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select

from recapflow.models.webhook_failure import DeadLetterEntry, WebhookFailure
from recapflow.services.webhook_retry import (
    MANUAL_RETRY_ERROR,
    FailureStatus,
    WebhookRetryManager,
)
from recapflow.utils.background import drain

PAYLOAD = {"event": "meeting.ended", "payload": {"object": {"uuid": "abc=="}}}


@pytest.fixture
def mock_alert():
    with patch("recapflow.services.webhook_retry.send_dead_letter_alert", new_callable=AsyncMock) as mock:
        yield mock


async def _dead_letter_count(db) -> int:
    return (await db.execute(select(func.count()).select_from(DeadLetterEntry))).scalar()


class TestRetryDelay:
    def test_ladder(self):
        manager = WebhookRetryManager(retry_delays_minutes=(1, 5, 15))
        assert manager.retry_delay(1) == timedelta(minutes=1)
        assert manager.retry_delay(2) == timedelta(minutes=5)
        assert manager.retry_delay(3) == timedelta(minutes=15)

    def test_clamped_to_last_rung(self):
        manager = WebhookRetryManager(retry_delays_minutes=(1, 5, 15))
        assert manager.retry_delay(9) == timedelta(minutes=15)

    def test_empty_ladder_rejected(self):
        with pytest.raises(ValueError):
            WebhookRetryManager(retry_delays_minutes=())


class TestRecordFailure:
    async def test_first_failure_scheduled(self, db):
        manager = WebhookRetryManager()
        before = datetime.now(timezone.utc)

        failure = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "db exploded")

        assert failure.attempts == 1
        assert failure.status == FailureStatus.PENDING
        assert failure.payload == PAYLOAD
        assert len(failure.failure_history) == 1
        assert failure.failure_history[0]["attempt"] == 1
        assert failure.next_retry_at >= before + timedelta(minutes=1)

    async def test_due_for_retry(self, db):
        manager = WebhookRetryManager()
        due = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")
        later = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e2")
        due.next_retry_at = datetime.now(timezone.utc) - timedelta(seconds=5)
        await db.flush()

        result = await manager.get_due_for_retry(db)

        assert [f.id for f in result] == [due.id]
        assert later.id not in [f.id for f in result]


class TestHandleRetryFailure:
    async def test_reschedules_on_ladder(self, db):
        manager = WebhookRetryManager()
        failure = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")
        await manager.mark_retry_in_progress(db, failure)

        entry = await manager.handle_retry_failure(db, failure, "e2")

        assert entry is None
        assert failure.attempts == 2
        assert failure.status == FailureStatus.PENDING
        assert [h["error"] for h in failure.failure_history] == ["e1", "e2"]

    async def test_three_failures_dead_letter_once(self, db, mock_alert):
        """Initial failure plus two failed replays escalate to exactly one entry."""
        manager = WebhookRetryManager(max_attempts=3)
        failure = await manager.record_failure(db, "google_meet", "conference.ended", PAYLOAD, "e1")
        assert await manager.handle_retry_failure(db, failure, "e2") is None

        entry = await manager.handle_retry_failure(db, failure, "e3")
        await db.commit()
        await drain()

        assert entry is not None
        assert entry.total_attempts == 3
        assert len(entry.failure_history) == 3
        assert entry.payload == PAYLOAD
        assert entry.alert_sent is True
        assert failure.status == FailureStatus.DEAD_LETTER
        assert failure.next_retry_at is None
        assert await _dead_letter_count(db) == 1

        mock_alert.assert_called_once()
        alert_payload = mock_alert.call_args[0][0]
        assert alert_payload["platform"] == "google_meet"
        assert alert_payload["totalAttempts"] == 3
        assert alert_payload["eventType"] == "conference.ended"

    async def test_move_to_dead_letter_idempotent(self, db, mock_alert):
        manager = WebhookRetryManager(max_attempts=1)
        failure = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")

        first = await manager.move_to_dead_letter(db, failure)
        second = await manager.move_to_dead_letter(db, failure)
        await db.commit()
        await drain()

        assert first.id == second.id
        assert await _dead_letter_count(db) == 1
        assert mock_alert.call_count == 1

    async def test_alert_sent_only_after_commit(self, db, mock_alert):
        """A rolled-back escalation sends nothing; the next one alerts once."""
        manager = WebhookRetryManager(max_attempts=1)
        failure = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")
        await db.commit()
        failure_id = failure.id

        await manager.move_to_dead_letter(db, failure)
        await drain()
        mock_alert.assert_not_called()

        await db.rollback()
        await drain()
        mock_alert.assert_not_called()
        assert await _dead_letter_count(db) == 0

        failure = await db.get(WebhookFailure, failure_id, populate_existing=True)
        entry = await manager.move_to_dead_letter(db, failure)
        await db.commit()
        await drain()

        assert entry.alert_sent is True
        mock_alert.assert_called_once()


class TestMarkRetrySuccessful:
    async def test_completed(self, db):
        manager = WebhookRetryManager()
        failure = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")
        await manager.mark_retry_successful(db, failure)
        assert failure.status == FailureStatus.COMPLETED
        assert failure.next_retry_at is None


class TestRetryDeadLetter:
    async def test_requeues_and_resolves(self, db, mock_alert):
        manager = WebhookRetryManager(max_attempts=1)
        failure = await manager.record_failure(db, "microsoft_teams", "teams.transcript.created", PAYLOAD, "e1")
        entry = await manager.move_to_dead_letter(db, failure)
        await db.commit()
        await drain()

        requeued = await manager.retry_dead_letter(db, entry.id)

        assert requeued.id != failure.id
        assert requeued.attempts == 0
        assert requeued.error == MANUAL_RETRY_ERROR
        assert requeued.payload == PAYLOAD
        assert requeued.status == FailureStatus.PENDING
        assert entry.resolved is True
        assert str(requeued.id) in entry.resolution_notes
        assert await manager.get_unresolved_dead_letters(db) == []

        due = await manager.get_due_for_retry(db)
        assert requeued.id in [f.id for f in due]

    async def test_unknown_entry(self, db):
        assert await WebhookRetryManager().retry_dead_letter(db, uuid.uuid4()) is None


class TestMetrics:
    async def test_counts_by_status_and_platform(self, db, mock_alert):
        manager = WebhookRetryManager(max_attempts=1)
        pending = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e1")
        done = await manager.record_failure(db, "zoom", "meeting.ended", PAYLOAD, "e2")
        await manager.mark_retry_successful(db, done)
        dead = await manager.record_failure(db, "google_meet", "conference.ended", PAYLOAD, "e3")
        await manager.move_to_dead_letter(db, dead)
        await db.commit()
        await drain()

        metrics = await manager.get_metrics(db)

        totals = metrics["totals"]
        assert totals["total"] == 3
        assert totals["pending"] == 1
        assert totals["completed"] == 1
        assert totals["dead_letter"] == 1
        assert totals["unresolved_dead_letters"] == 1
        assert metrics["by_platform"]["zoom"] == {"total": 2, "failed": 1, "dead_lettered": 0}
        assert metrics["by_platform"]["google_meet"] == {"total": 1, "failed": 1, "dead_lettered": 1}
        assert pending.status == FailureStatus.PENDING
