"""
Base class for conferencing platform API clients.

Owns the memoized access token (value + expiry, refreshed 5 minutes early)
and the HTTP call path: every request is raced against a hard timeout and
failures are classified into the transcript error taxonomy:

- 404 / "processing" responses   -> TranscriptNotReadyError (retry later)
- timeouts, 429, 5xx, transport  -> TransientFetchError (retry later)
- 401/403 and other 4xx          -> PermanentFetchError (fail now)
"""
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from recapflow.errors import (
    PermanentFetchError,
    TranscriptNotReadyError,
    TransientFetchError,
    is_not_ready_message,
)
from recapflow.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

TIMEOUT = 10.0
TOKEN_REFRESH_BUFFER_SECONDS = 300


@dataclass
class CachedToken:
    value: str
    expires_at: float  # time.monotonic() deadline

    def is_fresh(self, buffer_seconds: int = TOKEN_REFRESH_BUFFER_SECONDS) -> bool:
        return time.monotonic() < self.expires_at - buffer_seconds


def raise_for_platform_status(response: httpx.Response, context: str) -> None:
    """Map an HTTP error response onto the retry taxonomy."""
    status = response.status_code
    if status < 400:
        return
    body = response.text[:300] if response.content else ""
    message = f"{context} failed: HTTP {status} {body}".strip()

    if status == 404 or (status in (409, 425) and is_not_ready_message(body)):
        raise TranscriptNotReadyError(message, status_code=status)
    if status == 429 or status >= 500:
        raise TransientFetchError(message, status_code=status)
    raise PermanentFetchError(message, status_code=status)


class PlatformClient(ABC):
    """Shared HTTP plumbing for Zoom, Google Meet and Microsoft Graph."""

    platform: str = ""

    def __init__(self, timeout: float = TIMEOUT):
        self.timeout = timeout
        self._token: Optional[CachedToken] = None

    @abstractmethod
    async def _fetch_token(self) -> tuple[str, int]:
        """Obtain a new access token. Returns (token, expires_in_seconds)."""
        ...

    async def get_access_token(self) -> str:
        """Return the cached token, refreshing it when close to expiry."""
        if self._token and self._token.is_fresh():
            return self._token.value
        logger.info("Fetching new %s access token", self.platform)
        token, expires_in = await with_timeout(
            self._fetch_token(), self.timeout, f"{self.platform} token refresh",
        )
        self._token = CachedToken(token, time.monotonic() + int(expires_in))
        return token

    def invalidate_token(self) -> None:
        self._token = None

    async def _post_token_form(self, url: str, data: dict, auth: Optional[tuple] = None) -> tuple[str, int]:
        """POST a form-encoded OAuth token request."""
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, data=data, auth=auth)
        if response.status_code >= 400:
            raise PermanentFetchError(
                f"{self.platform} token request failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        payload = response.json()
        return payload["access_token"], int(payload.get("expires_in", 3600))

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        bearer: Optional[str] = None,
        timeout: Optional[float] = None,
        context: str = "",
    ) -> httpx.Response:
        """Authenticated request with hard timeout and error classification."""
        timeout = timeout or self.timeout
        token = bearer if bearer is not None else await self.get_access_token()
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
        context = context or f"{self.platform} {method} {url[:80]}"

        async def _send() -> httpx.Response:
            async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                return await client.request(method, url, params=params, headers=request_headers)

        try:
            response = await with_timeout(_send(), timeout + 1, context)
        except httpx.TimeoutException as e:
            raise TransientFetchError(f"{context} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientFetchError(f"{context} transport error: {e}") from e

        if response.status_code == 401 and bearer is None:
            # Token revoked or rotated early; next call fetches a new one
            self.invalidate_token()
        raise_for_platform_status(response, context)
        return response

    async def _get_json(self, url: str, params: Optional[dict] = None, context: str = "") -> dict:
        response = await self._request("GET", url, params=params, context=context)
        try:
            return response.json()
        except ValueError as e:
            raise PermanentFetchError(f"{context or url}: malformed JSON response") from e
