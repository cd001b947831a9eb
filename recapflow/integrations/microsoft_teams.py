"""
Microsoft Teams integration - Graph online meeting transcripts.

Auth: client credentials grant against the tenant, scope graph/.default.
Transcript content is requested as text/vtt.
"""
import logging
from functools import lru_cache
from typing import Optional

from recapflow.errors import PermanentFetchError
from recapflow.integrations.base import PlatformClient

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"


class TeamsClient(PlatformClient):
    """Microsoft Graph client for Teams meetings."""

    platform = "microsoft_teams"

    def __init__(self, tenant_id: str = "", client_id: str = "", client_secret: str = "", timeout: float = 10.0):
        super().__init__(timeout=timeout)
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret

    async def _fetch_token(self) -> tuple[str, int]:
        if not (self.tenant_id and self.client_id and self.client_secret):
            raise PermanentFetchError("Microsoft Graph credentials not configured")
        return await self._post_token_form(
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "scope": GRAPH_SCOPE,
                "grant_type": "client_credentials",
            },
        )

    async def get_online_meeting(self, user_id: str, meeting_id: str) -> dict:
        return await self._get_json(
            f"{GRAPH_BASE_URL}/users/{user_id}/onlineMeetings/{meeting_id}",
            context="graph get online meeting",
        )

    async def get_transcript_content(
        self,
        user_id: Optional[str] = None,
        meeting_id: Optional[str] = None,
        transcript_id: Optional[str] = None,
        content_url: Optional[str] = None,
    ) -> str:
        """Download transcript content in VTT format."""
        if content_url:
            url = content_url if content_url.startswith("http") else f"{GRAPH_BASE_URL}/{content_url.lstrip('/')}"
        elif user_id and meeting_id and transcript_id:
            url = (
                f"{GRAPH_BASE_URL}/users/{user_id}/onlineMeetings/{meeting_id}"
                f"/transcripts/{transcript_id}/content"
            )
        else:
            raise PermanentFetchError("Teams transcript pointer is incomplete")

        response = await self._request(
            "GET", url, params={"$format": "text/vtt"},
            headers={"Accept": "text/vtt"}, context="graph transcript content",
        )
        logger.info("Teams transcript downloaded (%d bytes)", len(response.text))
        return response.text


@lru_cache()
def get_teams_client() -> TeamsClient:
    from recapflow.config import get_settings
    settings = get_settings()
    return TeamsClient(
        tenant_id=settings.teams_tenant_id,
        client_id=settings.teams_client_id,
        client_secret=settings.teams_client_secret,
        timeout=settings.http_timeout_seconds,
    )
