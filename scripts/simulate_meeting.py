"""
Simulate platform webhooks against a local server.

Zoom requests are signed with ZOOM_WEBHOOK_SECRET_TOKEN when configured.
Meet and Teams requests only pass authentication when the server runs
outside production or with ALLOW_UNSIGNED_WEBHOOKS=true.

Usage:
    python scripts/simulate_meeting.py
    python scripts/simulate_meeting.py --platform meet --meeting rec-42
    python scripts/simulate_meeting.py --platform teams --meeting m-7 --repeat 3
"""
import argparse
import asyncio
import base64
import json
import logging
import time
import uuid

import httpx

from recapflow.config import get_settings
from recapflow.webhooks.auth import compute_zoom_signature

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def simulate_zoom(meeting: str, event: str):
    """Send a signed Zoom recording.completed (or meeting.ended) webhook."""
    payload = {
        "event": event,
        "event_ts": int(time.time() * 1000),
        "download_token": "simulated-download-token",
        "payload": {
            "account_id": "simulated",
            "object": {
                "uuid": meeting,
                "host_email": "host@example.com",
                "topic": "Simulated design review",
                "start_time": "2026-05-01T14:00:00Z",
                "duration": 30,
                "recording_files": [{
                    "file_type": "TRANSCRIPT",
                    "status": "completed",
                    "download_url": "https://zoom.example/rec/simulated.vtt",
                }],
            },
        },
    }
    body = json.dumps(payload).encode()
    ts = str(int(time.time()))
    headers = {"Content-Type": "application/json", "x-zm-request-timestamp": ts}
    secret = get_settings().zoom_webhook_secret_token
    if secret:
        headers["x-zm-signature"] = compute_zoom_signature(secret, ts, body)

    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhooks/zoom", content=body, headers=headers)
        logger.info("Zoom response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_meet(meeting: str, message_id: str):
    """Send a Pub/Sub push envelope carrying a conferenceRecord.v2.ended event."""
    event = {
        "eventType": "google.workspace.meet.conference.v2.ended",
        "conferenceRecord": {"name": f"conferenceRecords/{meeting}", "space": {"meetingCode": "abc-defg-hij"}},
    }
    envelope = {
        "message": {
            "data": base64.b64encode(json.dumps(event).encode()).decode(),
            "messageId": message_id,
            "attributes": {},
        },
        "subscription": "projects/simulated/subscriptions/meet-events",
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhooks/meet",
            json=envelope,
            headers={"Authorization": "Bearer simulated"},
        )
        logger.info("Meet response: %s %s", resp.status_code, resp.text)
        return resp


async def simulate_teams(meeting: str):
    """Send a Graph change notification for a new call transcript."""
    settings = get_settings()
    transcript_id = f"tr-{meeting}"
    notification = {
        "subscriptionId": "simulated-subscription",
        "changeType": "created",
        "tenantId": settings.teams_tenant_id or "simulated-tenant",
        "clientState": settings.teams_client_state,
        "resource": f"users('organizer')/onlineMeetings('{meeting}')/transcripts('{transcript_id}')",
        "resourceData": {"@odata.type": "#Microsoft.Graph.callTranscript", "id": transcript_id},
    }
    bearer = settings.teams_webhook_bearer_token or "simulated"
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(
            f"{BASE_URL}/api/v1/webhooks/teams",
            json={"value": [notification]},
            headers={"Authorization": f"Bearer {bearer}"},
        )
        logger.info("Teams response: %s %s", resp.status_code, resp.text)
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate meeting platform webhooks")
    parser.add_argument("--platform", default="zoom", choices=["zoom", "meet", "teams"])
    parser.add_argument("--meeting", default="4444AAAiAAAAAiAiAiiAii==")
    parser.add_argument("--event", default="recording.completed", choices=["recording.completed", "meeting.ended"])
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same event N times")
    args = parser.parse_args()

    logger.info("Simulating %s webhook for meeting %s (x%d)...", args.platform, args.meeting, args.repeat)
    message_id = uuid.uuid4().hex

    for _ in range(args.repeat):
        if args.platform == "zoom":
            await simulate_zoom(args.meeting, args.event)
        elif args.platform == "meet":
            await simulate_meet(args.meeting, message_id)
        elif args.platform == "teams":
            await simulate_teams(args.meeting)


if __name__ == "__main__":
    asyncio.run(main())
