"""
Microsoft Teams webhook normalization (Graph change notifications).

One delivery can batch several notifications; each is normalized and routed
on its own, and its replay payload is a single-notification batch.
"""
import logging
import re
from typing import Optional

from recapflow.errors import PermanentEventError
from recapflow.schemas.events import CanonicalEvent, EventAction, Platform, TeamsTranscriptSource

logger = logging.getLogger(__name__)

TRANSCRIPT_EVENT = "teams.transcript.created"
RECORDING_EVENT = "teams.recording.created"

_USER_RE = re.compile(r"users(?:\('([^']+)'\)|/([^/]+))")
_MEETING_RE = re.compile(r"onlineMeetings(?:\('([^']+)'\)|/([^/]+))")
_TRANSCRIPT_RE = re.compile(r"transcripts(?:\('([^']+)'\)|/([^/]+))")


def parse_resource_path(resource: str) -> dict[str, Optional[str]]:
    """Pull user, meeting and transcript ids out of a Graph resource path."""
    resource = resource or ""
    user = _USER_RE.search(resource)
    meeting = _MEETING_RE.search(resource)
    transcript = _TRANSCRIPT_RE.search(resource)
    return {
        "user_id": (user.group(1) or user.group(2)) if user else None,
        "meeting_id": (meeting.group(1) or meeting.group(2)) if meeting else None,
        "transcript_id": (transcript.group(1) or transcript.group(2)) if transcript else None,
    }


def split_notifications(body: dict) -> list[dict]:
    notifications = body.get("value")
    if not isinstance(notifications, list):
        raise PermanentEventError("Graph notification batch has no value list")
    return [n for n in notifications if isinstance(n, dict)]


def _event_type(notification: dict) -> str:
    odata_type = (notification.get("resourceData") or {}).get("@odata.type") or ""
    if "callTranscript" in odata_type:
        return TRANSCRIPT_EVENT
    if "callRecording" in odata_type:
        return RECORDING_EVENT
    return f"teams.{notification.get('changeType') or 'unknown'}"


def normalize_teams_notification(notification: dict) -> CanonicalEvent:
    """Build the canonical event for one change notification."""
    event_type = _event_type(notification)
    resource_data = notification.get("resourceData") or {}
    subscription_id = notification.get("subscriptionId") or "unknown"
    resource_id = resource_data.get("id") or notification.get("resource") or ""
    if not resource_id:
        raise PermanentEventError("Graph notification has no resource identifier")

    identity = f"{event_type}-{subscription_id}-{resource_id}"
    payload = {"value": [notification]}
    action = {
        TRANSCRIPT_EVENT: EventAction.TRANSCRIPT_READY,
        RECORDING_EVENT: EventAction.RECORDING_READY,
    }.get(event_type)

    if action is None:
        return CanonicalEvent(
            platform=Platform.MICROSOFT_TEAMS,
            event_type=event_type,
            external_event_id=identity,
            lock_key=identity,
            payload=payload,
        )

    ids = parse_resource_path(notification.get("resource") or "")
    if not ids["meeting_id"]:
        raise PermanentEventError(f"Unparseable Graph resource path: {notification.get('resource')!r}")

    tenant = notification.get("tenantId") or "common"
    source = None
    if action == EventAction.TRANSCRIPT_READY:
        transcript_id = ids["transcript_id"] or resource_data.get("id")
        source = TeamsTranscriptSource(
            user_id=ids["user_id"],
            meeting_id=ids["meeting_id"],
            transcript_id=transcript_id,
            content_url=resource_data.get("transcriptContentUrl"),
        )

    return CanonicalEvent(
        platform=Platform.MICROSOFT_TEAMS,
        event_type=event_type,
        action=action,
        external_event_id=identity,
        lock_key=identity,
        platform_meeting_id=f"teams-{tenant}-{ids['meeting_id']}",
        transcript_source=source,
        payload=payload,
    )
