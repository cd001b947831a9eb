"""
Zoom integration - recording transcript download.

Recording webhooks carry a short-lived download_token that authorizes the
file download directly. Without one, a server-to-server OAuth token
(account_credentials grant) is used.
"""
import logging
from functools import lru_cache
from typing import Optional

from recapflow.errors import PermanentFetchError, TranscriptNotReadyError, is_not_ready_message
from recapflow.integrations.base import PlatformClient

logger = logging.getLogger(__name__)

TOKEN_URL = "https://zoom.us/oauth/token"
API_BASE = "https://api.zoom.us/v2"


class ZoomClient(PlatformClient):
    """Zoom REST API client."""

    platform = "zoom"

    def __init__(
        self,
        account_id: str = "",
        client_id: str = "",
        client_secret: str = "",
        timeout: float = 10.0,
        download_timeout: float = 30.0,
    ):
        super().__init__(timeout=timeout)
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.download_timeout = download_timeout

    async def _fetch_token(self) -> tuple[str, int]:
        if not (self.account_id and self.client_id and self.client_secret):
            raise PermanentFetchError("Zoom API credentials not configured")
        return await self._post_token_form(
            TOKEN_URL,
            data={"grant_type": "account_credentials", "account_id": self.account_id},
            auth=(self.client_id, self.client_secret),
        )

    async def download_transcript(self, download_url: str, download_token: Optional[str] = None) -> str:
        """Download a TRANSCRIPT recording file and return its VTT text."""
        response = await self._request(
            "GET",
            download_url,
            bearer=download_token,
            timeout=self.download_timeout,
            context="zoom transcript download",
        )
        text = response.text
        content_type = response.headers.get("content-type", "")

        # Zoom answers some not-yet-available files with a JSON error body
        if "application/json" in content_type:
            try:
                message = str(response.json().get("message", ""))
            except ValueError:
                message = text[:200]
            if is_not_ready_message(message) or "does not exist" in message.lower():
                raise TranscriptNotReadyError(f"Zoom transcript not ready: {message}")
            raise PermanentFetchError(f"Unexpected Zoom download response: {message}")

        if not text.strip():
            raise TranscriptNotReadyError("Zoom transcript file is empty")
        logger.info("Zoom transcript downloaded (%d bytes)", len(text))
        return text

    async def get_meeting(self, meeting_uuid: str) -> dict:
        """Past meeting details (topic, host, times)."""
        from urllib.parse import quote
        # UUIDs starting with "/" or containing "//" must be double-encoded
        encoded = quote(quote(meeting_uuid, safe=""), safe="")
        return await self._get_json(f"{API_BASE}/past_meetings/{encoded}", context="zoom get meeting")


@lru_cache()
def get_zoom_client() -> ZoomClient:
    from recapflow.config import get_settings
    settings = get_settings()
    return ZoomClient(
        account_id=settings.zoom_account_id,
        client_id=settings.zoom_client_id,
        client_secret=settings.zoom_client_secret,
        timeout=settings.http_timeout_seconds,
        download_timeout=settings.download_timeout_seconds,
    )
