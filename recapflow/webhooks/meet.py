"""
Google Meet webhook normalization (Workspace Events via Pub/Sub push).

The push envelope carries the event as base64 JSON in message.data; the
event type comes from the decoded body or the CloudEvents ce-type attribute.
"""
import base64
import binascii
import json
import logging
from typing import Optional

from pydantic import ValidationError

from recapflow.errors import PermanentEventError
from recapflow.integrations.google_meet import conference_record_name
from recapflow.schemas.events import CanonicalEvent, EventAction, MeetConferenceSource, Platform

logger = logging.getLogger(__name__)

CONFERENCE_ENDED = "google.workspace.meet.conference.v2.ended"
TRANSCRIPT_GENERATED = "google.workspace.meet.transcript.v2.fileGenerated"

EVENT_ACTIONS = {
    CONFERENCE_ENDED: EventAction.CONFERENCE_ENDED,
    TRANSCRIPT_GENERATED: EventAction.TRANSCRIPT_READY,
}


def decode_pubsub_data(envelope: dict) -> dict:
    """Decode message.data of a Pub/Sub push envelope."""
    message = envelope.get("message")
    if not isinstance(message, dict):
        raise PermanentEventError("Pub/Sub envelope has no message")
    data = message.get("data")
    if not data:
        return {}
    try:
        decoded = json.loads(base64.b64decode(data).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise PermanentEventError(f"Undecodable Pub/Sub message data: {e}")
    if not isinstance(decoded, dict):
        raise PermanentEventError("Pub/Sub message data is not a JSON object")
    return decoded


def _record_from_transcript(transcript_name: str) -> Optional[str]:
    # conferenceRecords/{id}/transcripts/{tid}
    parts = transcript_name.split("/")
    if len(parts) >= 2 and parts[0] == "conferenceRecords":
        return f"conferenceRecords/{parts[1]}"
    return None


def normalize_meet_event(envelope: dict) -> CanonicalEvent:
    """Build the canonical event for one Pub/Sub push delivery."""
    message = envelope.get("message") or {}
    message_id = message.get("messageId") or message.get("message_id")
    if not message_id:
        raise PermanentEventError("Pub/Sub message has no messageId")

    event = decode_pubsub_data(envelope)
    attributes = message.get("attributes") or {}
    event_type = event.get("eventType") or attributes.get("ce-type") or "unknown"
    action = EVENT_ACTIONS.get(event_type)

    if action is None:
        return CanonicalEvent(
            platform=Platform.GOOGLE_MEET,
            event_type=event_type,
            external_event_id=f"{event_type}-{message_id}",
            lock_key=str(message_id),
            payload=envelope,
        )

    record = event.get("conferenceRecord") or {}
    record_name = record.get("name") or record.get("conferenceRecordName")
    if not record_name:
        transcript_name = (event.get("transcript") or {}).get("name") or ""
        record_name = _record_from_transcript(transcript_name)
    if not record_name:
        raise PermanentEventError(f"Meet {event_type} event missing conference record")
    record_name = conference_record_name(record_name)
    record_id = record_name.split("/", 1)[1]

    meeting_code = (record.get("space") or {}).get("meetingCode")
    try:
        return CanonicalEvent(
            platform=Platform.GOOGLE_MEET,
            event_type=event_type,
            action=action,
            external_event_id=f"{event_type}-{record_name}-{message_id}",
            lock_key=str(message_id),
            platform_meeting_id=f"meet-{record_id}",
            topic=f"Meet: {meeting_code}" if meeting_code else None,
            start_time=record.get("startTime") or None,
            end_time=record.get("endTime") or None,
            transcript_source=MeetConferenceSource(conference_record=record_name),
            payload=envelope,
        )
    except ValidationError as e:
        raise PermanentEventError(f"Malformed Meet {event_type} event: {e.error_count()} invalid field(s)")
