"""
Zoom webhook normalization.

meeting.ended                   -> conference_ended
recording.completed             -> recording_ready (TRANSCRIPT file + download_token)
recording.transcript_completed  -> transcript_ready
anything else                   -> acknowledged, not processed
"""
import logging
from typing import Optional
from urllib.parse import unquote

from pydantic import ValidationError

from recapflow.errors import PermanentEventError
from recapflow.schemas.events import CanonicalEvent, EventAction, Platform, ZoomDownloadSource

logger = logging.getLogger(__name__)

URL_VALIDATION_EVENT = "endpoint.url_validation"

EVENT_ACTIONS = {
    "meeting.ended": EventAction.CONFERENCE_ENDED,
    "recording.completed": EventAction.RECORDING_READY,
    "recording.transcript_completed": EventAction.TRANSCRIPT_READY,
}


def normalize_zoom_uuid(raw: Optional[str]) -> str:
    """Canonical meeting UUID: URL-decoded when it carries escapes, stripped."""
    if not raw:
        return ""
    value = str(raw)
    if "%" in value:
        value = unquote(value)
    return value.strip()


def find_transcript_file(meeting_object: dict) -> Optional[dict]:
    for recording in meeting_object.get("recording_files") or []:
        if recording.get("file_type") == "TRANSCRIPT" and recording.get("status") == "completed":
            return recording
    return None


def normalize_zoom_event(body: dict) -> CanonicalEvent:
    """Build the canonical event for one Zoom webhook delivery."""
    event_type = body.get("event")
    if not event_type or not isinstance(event_type, str):
        raise PermanentEventError("Zoom payload has no event type")

    event_ts = body.get("event_ts")
    meeting_object = (body.get("payload") or {}).get("object") or {}
    meeting_uuid = normalize_zoom_uuid(meeting_object.get("uuid"))
    action = EVENT_ACTIONS.get(event_type)

    if action is None:
        # Unknown types still get a stable identity for auditing
        ident = meeting_uuid or str(event_ts or "")
        return CanonicalEvent(
            platform=Platform.ZOOM,
            event_type=event_type,
            external_event_id=f"{event_type}-{ident}-{event_ts}",
            lock_key=f"{event_type}:{ident}:{event_ts}",
            payload=body,
        )

    if not meeting_uuid:
        raise PermanentEventError(f"Zoom {event_type} payload missing meeting uuid")

    source = None
    if action in (EventAction.RECORDING_READY, EventAction.TRANSCRIPT_READY):
        transcript_file = find_transcript_file(meeting_object)
        if transcript_file and transcript_file.get("download_url"):
            source = ZoomDownloadSource(
                download_url=transcript_file["download_url"],
                download_token=body.get("download_token"),
            )

    try:
        return CanonicalEvent(
            platform=Platform.ZOOM,
            event_type=event_type,
            action=action,
            external_event_id=f"{event_type}-{meeting_uuid}-{event_ts}",
            lock_key=f"{event_type}:{meeting_uuid}",
            platform_meeting_id=meeting_uuid,
            host_email=meeting_object.get("host_email") or None,
            topic=meeting_object.get("topic") or None,
            start_time=meeting_object.get("start_time") or None,
            end_time=meeting_object.get("end_time") or None,
            duration_minutes=meeting_object.get("duration") or None,
            transcript_source=source,
            payload=body,
        )
    except ValidationError as e:
        raise PermanentEventError(f"Malformed Zoom {event_type} payload: {e.error_count()} invalid field(s)")
