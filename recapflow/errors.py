"""
Exception taxonomy for the ingestion pipeline.

Transient errors are retried by whichever layer detected them.
Permanent errors are recorded and never retried automatically.
"""
from typing import Optional


class PermanentEventError(Exception):
    """Webhook payload is malformed or lacks a correlation id. Never retried."""


class TranscriptFetchError(Exception):
    """Base class for transcript retrieval failures."""

    retryable = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TranscriptNotReadyError(TranscriptFetchError):
    """Platform answered not-found / still processing."""

    retryable = True


class TransientFetchError(TranscriptFetchError):
    """Network timeout, rate limiting or a 5xx from the platform."""

    retryable = True


class PermanentFetchError(TranscriptFetchError):
    """Auth failure or malformed response. Fails immediately."""


class OperationTimeoutError(TransientFetchError):
    """An external call exceeded its hard timeout."""

    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


NOT_READY_MARKERS = ("not ready", "not found", "404", "processing")


def is_not_ready_message(message: str) -> bool:
    """Classify a bare error message as a not-ready-yet signal."""
    lowered = (message or "").lower()
    return any(marker in lowered for marker in NOT_READY_MARKERS)


class WebhookAuthError(Exception):
    """Sender could not be authenticated. Maps to 401, or 403 for claim failures."""

    def __init__(self, detail: str, status_code: int = 401):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
