"""
Tests for recapflow/api/admin.py - operator auth, dead letters, meeting inspection and reprocessing.
"""
import time
import uuid
from unittest.mock import AsyncMock, patch

import jwt as pyjwt
import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from recapflow.api.admin import (
    get_current_operator,
    get_meeting_detail,
    list_dead_letters,
    queue_stats,
    reprocess,
    retry_dead_letter,
    webhook_metrics,
)
from recapflow.config import Settings
from recapflow.models.meeting import Meeting
from recapflow.schemas.events import MeetConferenceSource
from recapflow.services.meeting_state import MeetingStatus
from recapflow.services.transcript_queue import TRANSCRIPT_NOTIFY_KEY, JobStatus, TranscriptQueue
from recapflow.services.webhook_retry import WebhookRetryManager
from recapflow.utils.background import drain
from payloads import zoom_recording_completed

SECRET = "operator-secret-for-tests-0123456789abcdef"
OPERATOR = {"sub": "ops@example.com", "role": "operator"}


def _credentials(claims: dict, secret: str = SECRET) -> HTTPAuthorizationCredentials:
    token = pyjwt.encode(claims, secret, algorithm="HS256")
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


@pytest.fixture
def operator_settings():
    with patch("recapflow.config.get_settings", return_value=Settings(operator_jwt_secret=SECRET)):
        yield


@pytest.fixture
def mock_dead_letter_alert():
    with patch("recapflow.services.webhook_retry.send_dead_letter_alert", new_callable=AsyncMock) as mock:
        yield mock


async def _dead_letter(db):
    manager = WebhookRetryManager(max_attempts=1)
    failure = await manager.record_failure(db, "zoom", "recording.completed", zoom_recording_completed(), "boom")
    entry = await manager.move_to_dead_letter(db, failure)
    await db.commit()
    await drain()
    return entry


async def _failed_meeting(db, source=True) -> Meeting:
    meeting = Meeting(
        id=uuid.uuid4(),
        platform="google_meet",
        platform_meeting_id=f"meet-{uuid.uuid4().hex[:6]}",
        status=MeetingStatus.FAILED,
        error_message="Max transcript fetch attempts reached",
        transcript_source=MeetConferenceSource(conference_record="conferenceRecords/r").model_dump() if source else None,
    )
    db.add(meeting)
    await db.commit()
    return meeting


class TestOperatorAuth:
    async def test_valid_operator(self, operator_settings):
        claims = await get_current_operator(_credentials({**OPERATOR, "exp": int(time.time()) + 60}))
        assert claims["sub"] == "ops@example.com"

    async def test_wrong_role_forbidden(self, operator_settings):
        with pytest.raises(HTTPException) as exc:
            await get_current_operator(_credentials({"sub": "x", "role": "viewer"}))
        assert exc.value.status_code == 403

    async def test_expired_token(self, operator_settings):
        with pytest.raises(HTTPException) as exc:
            await get_current_operator(_credentials({**OPERATOR, "exp": int(time.time()) - 60}))
        assert exc.value.detail == "Token expired"

    async def test_wrong_secret(self, operator_settings):
        with pytest.raises(HTTPException) as exc:
            await get_current_operator(_credentials(OPERATOR, secret="another-operator-secret-0123456789abcdef"))
        assert exc.value.status_code == 401

    async def test_unconfigured_secret(self):
        with patch("recapflow.config.get_settings", return_value=Settings(operator_jwt_secret="")):
            with pytest.raises(HTTPException) as exc:
                await get_current_operator(_credentials(OPERATOR))
        assert exc.value.status_code == 401


class TestDeadLetters:
    async def test_list_and_metrics(self, db, mock_dead_letter_alert):
        entry = await _dead_letter(db)

        listed = await list_dead_letters(limit=50, db=db, operator=OPERATOR)
        metrics = await webhook_metrics(db=db, operator=OPERATOR)

        assert listed["count"] == 1
        item = listed["items"][0]
        assert item["id"] == str(entry.id)
        assert item["platform"] == "zoom"
        assert item["alert_sent"] is True
        assert metrics["totals"]["dead_letter"] == 1
        assert metrics["totals"]["unresolved_dead_letters"] == 1
        mock_dead_letter_alert.assert_called_once()

    async def test_retry_requeues(self, db, mock_dead_letter_alert):
        entry = await _dead_letter(db)

        result = await retry_dead_letter(str(entry.id), db=db, operator=OPERATOR)

        assert result["status"] == "requeued"
        listed = await list_dead_letters(limit=50, db=db, operator=OPERATOR)
        assert listed["count"] == 0

    async def test_retry_unknown_entry(self, db):
        with pytest.raises(HTTPException) as exc:
            await retry_dead_letter(str(uuid.uuid4()), db=db, operator=OPERATOR)
        assert exc.value.status_code == 404

    async def test_retry_bad_id(self, db):
        with pytest.raises(HTTPException) as exc:
            await retry_dead_letter("not-a-uuid", db=db, operator=OPERATOR)
        assert exc.value.status_code == 400


class TestMeetings:
    async def test_detail_without_transcript(self, db):
        meeting = await _failed_meeting(db)

        detail = await get_meeting_detail(str(meeting.id), db=db, operator=OPERATOR)

        assert detail["status"] == MeetingStatus.FAILED
        assert detail["error_message"] == "Max transcript fetch attempts reached"
        assert detail["transcript"] is None
        assert detail["job"] is None

    async def test_detail_missing(self, db):
        with pytest.raises(HTTPException) as exc:
            await get_meeting_detail(str(uuid.uuid4()), db=db, operator=OPERATOR)
        assert exc.value.status_code == 404

    async def test_reprocess_failed_meeting(self, db, fake_redis):
        meeting = await _failed_meeting(db)
        queue = TranscriptQueue(redis_factory=AsyncMock(return_value=fake_redis))

        with patch("recapflow.api.admin.get_transcript_queue", return_value=queue):
            result = await reprocess(str(meeting.id), db=db, operator=OPERATOR)

        assert result["status"] == MeetingStatus.PENDING
        detail = await get_meeting_detail(str(meeting.id), db=db, operator=OPERATOR)
        assert detail["job"]["status"] == JobStatus.PENDING
        assert fake_redis.lists[TRANSCRIPT_NOTIFY_KEY] == ["1"]

    async def test_reprocess_non_failed_conflicts(self, db, fake_redis):
        meeting = await _failed_meeting(db)
        meeting.status = MeetingStatus.COMPLETED
        await db.commit()
        queue = TranscriptQueue(redis_factory=AsyncMock(return_value=fake_redis))

        with patch("recapflow.api.admin.get_transcript_queue", return_value=queue):
            with pytest.raises(HTTPException) as exc:
                await reprocess(str(meeting.id), db=db, operator=OPERATOR)
        assert exc.value.status_code == 409

    async def test_reprocess_without_source_conflicts(self, db, fake_redis):
        meeting = await _failed_meeting(db, source=False)
        queue = TranscriptQueue(redis_factory=AsyncMock(return_value=fake_redis))

        with patch("recapflow.api.admin.get_transcript_queue", return_value=queue):
            with pytest.raises(HTTPException) as exc:
                await reprocess(str(meeting.id), db=db, operator=OPERATOR)
        assert exc.value.status_code == 409


async def test_queue_stats(db):
    with patch("recapflow.api.admin.get_transcript_queue", return_value=TranscriptQueue()):
        stats = await queue_stats(db=db, operator=OPERATOR)
    assert stats["due"] == 0
