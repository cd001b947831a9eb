"""
Webhook authentication - enforced before any handler runs.

- Zoom: HMAC-SHA256 via x-zm-signature, with a freshness window on
  x-zm-request-timestamp.
- Google Meet: Pub/Sub push OIDC token verified against Google's rotating
  JWKS, with issuer and audience checks.
- Microsoft Teams: bearer token presence check plus per-notification
  clientState.

A missing secret rejects the request in production and is tolerated (with a
warning) elsewhere, or anywhere when allow_unsigned_webhooks is set.
"""
import asyncio
import hashlib
import hmac
import logging
import time
from functools import lru_cache
from typing import Optional

import jwt as pyjwt

from recapflow.errors import WebhookAuthError

logger = logging.getLogger(__name__)

GOOGLE_ISSUERS = ("https://accounts.google.com", "accounts.google.com")
SIGNATURE_PREFIX = "v0="


def _unsigned_allowed(source: str) -> bool:
    from recapflow.config import get_settings
    settings = get_settings()
    if settings.allow_unsigned_webhooks or settings.app_env != "production":
        logger.warning("No %s webhook secret configured; accepting unverified request", source)
        return True
    logger.error("No %s webhook secret configured in production; rejecting request", source)
    return False


def compute_zoom_signature(secret: str, timestamp: str, body: bytes, request_id: Optional[str] = None) -> str:
    """v0=hex(HMAC-SHA256(secret, "v0:[request_id:]timestamp:body"))."""
    parts = ["v0"]
    if request_id:
        parts.append(request_id)
    parts.append(timestamp)
    message = ":".join(parts).encode("utf-8") + b":" + body
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def _timestamp_seconds(timestamp: str) -> Optional[float]:
    try:
        value = float(timestamp)
    except (TypeError, ValueError):
        return None
    # Milliseconds when it can't plausibly be seconds
    if value > 1e11:
        value = value / 1000.0
    return value


def verify_zoom_signature(
    body: bytes,
    signature: str,
    timestamp: str,
    request_id: Optional[str] = None,
    secret: Optional[str] = None,
    max_age_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    """Raise WebhookAuthError unless the Zoom request is signed and fresh."""
    from recapflow.config import get_settings
    settings = get_settings()
    secret = secret if secret is not None else settings.zoom_webhook_secret_token
    max_age = max_age_seconds if max_age_seconds is not None else settings.zoom_signature_max_age_seconds

    if not secret:
        if _unsigned_allowed("zoom"):
            return
        raise WebhookAuthError("Webhook secret not configured")

    if not signature or not timestamp:
        raise WebhookAuthError("Missing signature headers")

    sent_at = _timestamp_seconds(timestamp)
    if sent_at is None:
        raise WebhookAuthError("Invalid signature timestamp")
    age = (now if now is not None else time.time()) - sent_at
    if abs(age) > max_age:
        logger.warning("Zoom webhook timestamp outside window: age=%.0fs", age)
        raise WebhookAuthError("Stale signature timestamp")

    expected = compute_zoom_signature(secret, timestamp, body, request_id)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise WebhookAuthError("Invalid signature")


def zoom_url_validation_response(plain_token: str, secret: Optional[str] = None) -> dict:
    """Answer Zoom's endpoint.url_validation challenge."""
    if secret is None:
        from recapflow.config import get_settings
        secret = get_settings().zoom_webhook_secret_token
    encrypted = hmac.new(
        (secret or "").encode("utf-8"), plain_token.encode("utf-8"), hashlib.sha256,
    ).hexdigest()
    return {"plainToken": plain_token, "encryptedToken": encrypted}


@lru_cache(maxsize=4)
def _jwks_client(jwks_url: str) -> pyjwt.PyJWKClient:
    # PyJWKClient caches keys and refetches on unknown kid
    return pyjwt.PyJWKClient(jwks_url, cache_keys=True, lifespan=3600)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _decode_google_token(token: str, jwks_url: str, audience: str) -> dict:
    signing_key = _jwks_client(jwks_url).get_signing_key_from_jwt(token)
    claims = pyjwt.decode(
        token,
        key=signing_key.key,
        algorithms=["RS256"],
        audience=audience,
        options={"require": ["exp", "iss", "aud"]},
        leeway=30,
    )
    if claims.get("iss") not in GOOGLE_ISSUERS:
        raise pyjwt.InvalidIssuerError("Invalid issuer")
    return claims


async def verify_meet_jwt(
    authorization: Optional[str],
    audience: Optional[str] = None,
    jwks_url: Optional[str] = None,
) -> dict:
    """
    Verify the Pub/Sub push token. Returns its claims.
    Claim failures (audience, issuer, expiry) raise 403; anything else 401.
    """
    from recapflow.config import get_settings
    settings = get_settings()
    audience = audience if audience is not None else settings.meet_pubsub_audience
    jwks_url = jwks_url or settings.meet_jwks_url

    if not audience:
        if _unsigned_allowed("meet"):
            return {}
        raise WebhookAuthError("Pub/Sub audience not configured")

    token = _bearer_token(authorization)
    if not token:
        raise WebhookAuthError("Missing bearer token")

    try:
        # JWKS refresh is blocking I/O
        return await asyncio.to_thread(_decode_google_token, token, jwks_url, audience)
    except (pyjwt.InvalidAudienceError, pyjwt.InvalidIssuerError, pyjwt.ExpiredSignatureError,
            pyjwt.MissingRequiredClaimError) as e:
        raise WebhookAuthError(f"Claim validation failed: {e}", status_code=403)
    except pyjwt.PyJWTError as e:
        raise WebhookAuthError(f"Invalid token: {e}")


def verify_teams_bearer(authorization: Optional[str], expected: Optional[str] = None) -> None:
    """Bearer presence check; compared against the configured token when set."""
    if expected is None:
        from recapflow.config import get_settings
        expected = get_settings().teams_webhook_bearer_token

    token = _bearer_token(authorization)
    if not expected:
        if token or _unsigned_allowed("teams"):
            return
        raise WebhookAuthError("Missing bearer token")
    if not token:
        raise WebhookAuthError("Missing bearer token")
    if not hmac.compare_digest(token, expected):
        raise WebhookAuthError("Invalid bearer token")


def validate_client_state(received: Optional[str], expected: Optional[str] = None) -> bool:
    """Per-notification shared secret set when the Graph subscription was created."""
    if expected is None:
        from recapflow.config import get_settings
        expected = get_settings().teams_client_state
    if not expected:
        return True
    return hmac.compare_digest(received or "", expected)
