"""
Canonical event schemas.

Every platform payload is normalized at the router boundary into a
CanonicalEvent before it reaches business logic. Transcript pointers are a
tagged union discriminated on `kind`.
"""
from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter


class Platform:
    ZOOM = "zoom"
    GOOGLE_MEET = "google_meet"
    MICROSOFT_TEAMS = "microsoft_teams"

    ALL = (ZOOM, GOOGLE_MEET, MICROSOFT_TEAMS)


class EventAction:
    CONFERENCE_ENDED = "conference_ended"
    RECORDING_READY = "recording_ready"
    TRANSCRIPT_READY = "transcript_ready"


class ZoomDownloadSource(BaseModel):
    """Signed, short-lived recording file URL."""
    kind: Literal["zoom_download"] = "zoom_download"
    download_url: str
    download_token: Optional[str] = None


class MeetConferenceSource(BaseModel):
    """Meet REST transcript entries (with Docs export fallback)."""
    kind: Literal["meet_conference"] = "meet_conference"
    conference_record: str  # conferenceRecords/{id}


class TeamsTranscriptSource(BaseModel):
    """Graph onlineMeeting transcript content."""
    kind: Literal["teams_transcript"] = "teams_transcript"
    user_id: Optional[str] = None
    meeting_id: Optional[str] = None
    transcript_id: Optional[str] = None
    content_url: Optional[str] = None


TranscriptSource = Annotated[
    Union[ZoomDownloadSource, MeetConferenceSource, TeamsTranscriptSource],
    Field(discriminator="kind"),
]

_source_adapter = TypeAdapter(TranscriptSource)


def parse_transcript_source(data: dict) -> Union[ZoomDownloadSource, MeetConferenceSource, TeamsTranscriptSource]:
    """Rebuild a transcript pointer from its stored JSON form."""
    return _source_adapter.validate_python(data)


class CanonicalEvent(BaseModel):
    """Platform-agnostic lifecycle event."""
    platform: str
    event_type: str
    action: Optional[str] = None  # None = unknown event type, acknowledged only
    external_event_id: str
    lock_key: str

    platform_meeting_id: Optional[str] = None
    host_email: Optional[str] = None
    topic: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None

    transcript_source: Optional[TranscriptSource] = None

    # Replayable platform payload for this single event
    payload: dict = Field(default_factory=dict)


class HandlerResult(BaseModel):
    """Outcome of routing one event."""
    action: Literal["created", "updated", "skipped", "failed"]
    meeting_id: Optional[str] = None
    raw_event_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class WebhookAck(BaseModel):
    """HTTP acknowledgment returned to the sender."""
    received: bool = True
    duplicate: bool = False
    results: list[HandlerResult] = Field(default_factory=list)
    error: Optional[str] = None
