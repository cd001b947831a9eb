"""
Resolve a transcript pointer into raw caption text (WebVTT).
"""
import logging
from typing import Optional

from recapflow.errors import PermanentFetchError
from recapflow.schemas.events import (
    MeetConferenceSource,
    TeamsTranscriptSource,
    ZoomDownloadSource,
)

logger = logging.getLogger(__name__)


class CaptionDownloader:
    """Dispatches on the transcript source kind to the matching platform client."""

    def __init__(self, zoom=None, meet=None, teams=None):
        self._zoom = zoom
        self._meet = meet
        self._teams = teams

    @property
    def zoom(self):
        if self._zoom is None:
            from recapflow.integrations.zoom import get_zoom_client
            self._zoom = get_zoom_client()
        return self._zoom

    @property
    def meet(self):
        if self._meet is None:
            from recapflow.integrations.google_meet import get_meet_client
            self._meet = get_meet_client()
        return self._meet

    @property
    def teams(self):
        if self._teams is None:
            from recapflow.integrations.microsoft_teams import get_teams_client
            self._teams = get_teams_client()
        return self._teams

    async def download(self, source) -> str:
        if isinstance(source, ZoomDownloadSource):
            return await self.zoom.download_transcript(source.download_url, source.download_token)
        if isinstance(source, MeetConferenceSource):
            return await self.meet.fetch_transcript_vtt(source.conference_record)
        if isinstance(source, TeamsTranscriptSource):
            return await self.teams.get_transcript_content(
                user_id=source.user_id,
                meeting_id=source.meeting_id,
                transcript_id=source.transcript_id,
                content_url=source.content_url,
            )
        kind: Optional[str] = getattr(source, "kind", None)
        raise PermanentFetchError(f"Unsupported transcript source: {kind}")
