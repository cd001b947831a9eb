"""
Tests for recapflow/api/webhooks.py - endpoint authentication, challenges and routing handoff.

Endpoints are called directly with a mocked Request and a mocked EventRouter;
routing itself is covered in test_event_router.py.
"""
import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException

from recapflow.api.webhooks import (
    meet_subscription_check,
    meet_webhook,
    teams_subscription_check,
    teams_webhook,
    zoom_webhook,
)
from recapflow.config import Settings
from recapflow.errors import WebhookAuthError
from recapflow.schemas.events import EventAction, HandlerResult, WebhookAck
from recapflow.utils.background import drain
from recapflow.webhooks.auth import compute_zoom_signature
from recapflow.webhooks.meet import CONFERENCE_ENDED
from payloads import meet_envelope, teams_notification, zoom_recording_completed

ZOOM_SECRET = "zoom-secret"


def _make_request(
    *,
    headers: dict | None = None,
    body: bytes = b"",
    query: dict | None = None,
    client_host: str = "127.0.0.1",
):
    """Build a mock FastAPI Request with the fields the webhook handlers access."""
    req = MagicMock()
    req.client = MagicMock()
    req.client.host = client_host
    req.headers = headers or {}
    req.query_params = query or {}
    req.body = AsyncMock(return_value=body)
    return req


def _event_router(action: str = "created") -> MagicMock:
    router = MagicMock()
    router.receive = AsyncMock(
        return_value=WebhookAck(results=[HandlerResult(action=action, meeting_id="m-1")]),
    )
    return router


def _signed_zoom_request(payload: dict, secret: str = ZOOM_SECRET):
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    return _make_request(
        body=body,
        headers={
            "x-zm-signature": compute_zoom_signature(secret, ts, body),
            "x-zm-request-timestamp": ts,
        },
    )


@pytest.fixture
def settings():
    settings = Settings(
        app_env="production",
        zoom_webhook_secret_token=ZOOM_SECRET,
        teams_webhook_bearer_token="teams-token",
        teams_client_state="secret-state",
    )
    with patch("recapflow.config.get_settings", return_value=settings):
        yield settings


@pytest.fixture
def mock_alert():
    with patch("recapflow.api.webhooks.send_alert", new_callable=AsyncMock) as mock:
        yield mock


class TestZoomWebhook:
    async def test_signed_event_routed(self, settings):
        router = _event_router()
        request = _signed_zoom_request(zoom_recording_completed())

        result = await zoom_webhook(request, db=AsyncMock(), event_router=router)

        assert result["received"] is True
        assert result["results"][0]["action"] == "created"
        event = router.receive.call_args.args[1][0]
        assert event.action == EventAction.RECORDING_READY
        assert event.platform_meeting_id == "4444AAAiAAAAAiAiAiiAii=="

    async def test_bad_signature_rejected_and_alerted(self, settings, mock_alert):
        router = _event_router()
        request = _signed_zoom_request(zoom_recording_completed(), secret="wrong")

        with pytest.raises(HTTPException) as exc:
            await zoom_webhook(request, db=AsyncMock(), event_router=router)
        await drain()

        assert exc.value.status_code == 401
        router.receive.assert_not_awaited()
        mock_alert.assert_called_once()

    async def test_url_validation_answered(self, settings):
        router = _event_router()
        request = _signed_zoom_request({"event": "endpoint.url_validation", "payload": {"plainToken": "abc"}})

        result = await zoom_webhook(request, db=AsyncMock(), event_router=router)

        assert result["plainToken"] == "abc"
        assert len(result["encryptedToken"]) == 64
        router.receive.assert_not_awaited()

    async def test_url_validation_without_token(self, settings):
        request = _signed_zoom_request({"event": "endpoint.url_validation", "payload": {}})
        with pytest.raises(HTTPException) as exc:
            await zoom_webhook(request, db=AsyncMock(), event_router=_event_router())
        assert exc.value.status_code == 400

    async def test_malformed_json(self, settings):
        body = b"{not json"
        ts = str(int(time.time()))
        request = _make_request(body=body, headers={
            "x-zm-signature": compute_zoom_signature(ZOOM_SECRET, ts, body),
            "x-zm-request-timestamp": ts,
        })
        with pytest.raises(HTTPException) as exc:
            await zoom_webhook(request, db=AsyncMock(), event_router=_event_router())
        assert exc.value.status_code == 400

    async def test_unparseable_event_rejected(self, settings):
        request = _signed_zoom_request({"event": "meeting.ended", "payload": {"object": {}}})
        with pytest.raises(HTTPException) as exc:
            await zoom_webhook(request, db=AsyncMock(), event_router=_event_router())
        assert exc.value.status_code == 400


class TestMeetWebhook:
    async def test_subscription_check_echoes_challenge(self):
        response = await meet_subscription_check(_make_request(query={"challenge": "xyz"}))
        assert response.body == b"xyz"

    async def test_subscription_check_requires_challenge(self):
        with pytest.raises(HTTPException) as exc:
            await meet_subscription_check(_make_request())
        assert exc.value.status_code == 400

    async def test_verified_envelope_routed(self):
        router = _event_router()
        envelope = meet_envelope({"eventType": CONFERENCE_ENDED, "conferenceRecord": {"name": "conferenceRecords/r1"}})
        request = _make_request(body=json.dumps(envelope).encode(), headers={"authorization": "Bearer t"})

        with patch("recapflow.api.webhooks.verify_meet_jwt", new=AsyncMock(return_value={})):
            result = await meet_webhook(request, db=AsyncMock(), event_router=router)

        assert result["results"][0]["action"] == "created"
        assert router.receive.call_args.args[1][0].platform_meeting_id == "meet-r1"

    async def test_claim_failure_forbidden(self, mock_alert):
        router = _event_router()
        request = _make_request(body=b"{}", headers={"authorization": "Bearer t"})
        failing = AsyncMock(side_effect=WebhookAuthError("Claim validation failed", status_code=403))

        with patch("recapflow.api.webhooks.verify_meet_jwt", new=failing):
            with pytest.raises(HTTPException) as exc:
                await meet_webhook(request, db=AsyncMock(), event_router=router)
        await drain()

        assert exc.value.status_code == 403
        router.receive.assert_not_awaited()


class TestTeamsWebhook:
    async def test_subscription_check_echoes_token(self):
        response = await teams_subscription_check(_make_request(query={"validationToken": "tok"}))
        assert response.body == b"tok"
        assert response.media_type == "text/plain"

    async def test_validation_token_on_post(self, settings):
        router = _event_router()
        response = await teams_webhook(
            _make_request(query={"validationToken": "tok"}), db=AsyncMock(), event_router=router,
        )
        assert response.body == b"tok"
        router.receive.assert_not_awaited()

    async def test_notifications_routed_with_202(self, settings):
        router = _event_router()
        body = json.dumps({"value": [teams_notification()]}).encode()
        request = _make_request(body=body, headers={"authorization": "Bearer teams-token"})

        response = await teams_webhook(request, db=AsyncMock(), event_router=router)

        assert response.status_code == 202
        content = json.loads(response.body)
        assert content["results"][0]["action"] == "created"
        router.receive.assert_awaited_once()

    async def test_bad_client_state_skipped(self, settings):
        router = _event_router()
        notification = teams_notification()
        notification["clientState"] = "forged"
        body = json.dumps({"value": [notification]}).encode()
        request = _make_request(body=body, headers={"authorization": "Bearer teams-token"})

        response = await teams_webhook(request, db=AsyncMock(), event_router=router)

        content = json.loads(response.body)
        assert content["results"][0] == {
            "action": "failed", "meeting_id": None, "raw_event_id": None,
            "reason": None, "error": "Invalid client state",
        }
        router.receive.assert_not_awaited()

    async def test_wrong_bearer_rejected(self, settings, mock_alert):
        body = json.dumps({"value": [teams_notification()]}).encode()
        request = _make_request(body=body, headers={"authorization": "Bearer nope"})

        with pytest.raises(HTTPException) as exc:
            await teams_webhook(request, db=AsyncMock(), event_router=_event_router())
        await drain()

        assert exc.value.status_code == 401

    async def test_missing_value_list(self, settings):
        request = _make_request(body=b'{"value": "x"}', headers={"authorization": "Bearer teams-token"})
        with pytest.raises(HTTPException) as exc:
            await teams_webhook(request, db=AsyncMock(), event_router=_event_router())
        assert exc.value.status_code == 400
