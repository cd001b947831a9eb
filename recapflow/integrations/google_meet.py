"""
Google Meet integration - conference records, transcripts and entries.

Auth: OAuth refresh token exchanged for an access token (cached until
5 minutes before expiry).
All list endpoints are paginated with nextPageToken.
"""
import logging
from functools import lru_cache
from typing import Optional

from recapflow.errors import PermanentFetchError, TranscriptNotReadyError
from recapflow.integrations.base import PlatformClient
from recapflow.transcripts.formats import (
    entries_to_vtt,
    participant_display_name,
    plain_text_to_vtt,
)

logger = logging.getLogger(__name__)

MEET_API_BASE = "https://meet.googleapis.com/v2"
DRIVE_API_BASE = "https://www.googleapis.com/drive/v3"
TOKEN_URL = "https://oauth2.googleapis.com/token"
PAGE_SIZE = 100
MAX_PAGES = 50


def conference_record_name(value: str) -> str:
    """Normalize an id or resource name to conferenceRecords/{id}."""
    value = value.strip()
    if value.startswith("conferenceRecords/"):
        return value
    return f"conferenceRecords/{value}"


class GoogleMeetClient(PlatformClient):
    """Google Meet REST API v2 client."""

    platform = "google_meet"

    def __init__(self, client_id: str = "", client_secret: str = "", refresh_token: str = "", timeout: float = 10.0):
        super().__init__(timeout=timeout)
        self.client_id = client_id
        self.client_secret = client_secret
        self.refresh_token = refresh_token

    async def _fetch_token(self) -> tuple[str, int]:
        if not (self.client_id and self.client_secret and self.refresh_token):
            raise PermanentFetchError("Google Meet credentials not configured")
        return await self._post_token_form(
            TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": self.refresh_token,
                "grant_type": "refresh_token",
            },
        )

    async def _list(self, path: str, key: str, context: str) -> list[dict]:
        """Collect every page of a list endpoint."""
        items: list[dict] = []
        page_token: Optional[str] = None
        for _ in range(MAX_PAGES):
            params = {"pageSize": PAGE_SIZE}
            if page_token:
                params["pageToken"] = page_token
            data = await self._get_json(f"{MEET_API_BASE}/{path}", params=params, context=context)
            items.extend(data.get(key, []))
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return items

    async def get_conference_record(self, name: str) -> dict:
        return await self._get_json(
            f"{MEET_API_BASE}/{conference_record_name(name)}", context="meet get conference record",
        )

    async def list_transcripts(self, name: str) -> list[dict]:
        return await self._list(
            f"{conference_record_name(name)}/transcripts", "transcripts", "meet list transcripts",
        )

    async def list_transcript_entries(self, transcript_name: str) -> list[dict]:
        return await self._list(
            f"{transcript_name}/entries", "transcriptEntries", "meet list transcript entries",
        )

    async def list_participants(self, name: str) -> list[dict]:
        return await self._list(
            f"{conference_record_name(name)}/participants", "participants", "meet list participants",
        )

    async def export_document_text(self, document_id: str) -> str:
        """Export a Google Doc (transcript destination) as plain text."""
        response = await self._request(
            "GET",
            f"{DRIVE_API_BASE}/files/{document_id}/export",
            params={"mimeType": "text/plain"},
            context="meet docs export",
        )
        return response.text

    async def fetch_transcript_vtt(self, name: str) -> str:
        """
        Return the conference transcript as WebVTT.
        Raises TranscriptNotReadyError until a transcript reaches FILE_GENERATED.
        """
        transcripts = await self.list_transcripts(name)
        ready = next((t for t in transcripts if t.get("state") == "FILE_GENERATED"), None)
        if ready is None:
            states = ",".join(t.get("state", "?") for t in transcripts) or "none"
            raise TranscriptNotReadyError(f"Meet transcript not ready (states: {states})")

        entries = await self.list_transcript_entries(ready["name"])
        if entries:
            participants = await self.list_participants(name)
            names = {p.get("name", ""): participant_display_name(p) for p in participants}
            logger.info("Meet transcript entries fetched: %d entries", len(entries))
            return entries_to_vtt(entries, names)

        document = (ready.get("docsDestination") or {}).get("document")
        if document:
            logger.info("Meet transcript has no entries, exporting document %s", document[:12])
            text = await self.export_document_text(document)
            if text.strip():
                return plain_text_to_vtt(text)

        raise TranscriptNotReadyError("Meet transcript has no entries yet")


@lru_cache()
def get_meet_client() -> GoogleMeetClient:
    from recapflow.config import get_settings
    settings = get_settings()
    return GoogleMeetClient(
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        refresh_token=settings.google_refresh_token,
        timeout=settings.http_timeout_seconds,
    )
