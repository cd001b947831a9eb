"""
Operator alerts for pipeline events that need a human.

Every alert is logged (ERROR, or CRITICAL for severity="critical") and, when
ALERT_WEBHOOK_URL is set, posted to a Slack or Discord incoming webhook.

Each alert type has a cooldown held in Redis (SET NX EX) so a burst of bad
signatures or a crash loop produces one message per window. When Redis is
unreachable the cooldown falls back to process memory. Dead-letter alerts
skip the cooldown: every entry is announced once, guarded by the entry's
alert_sent flag.
"""
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class AlertType:
    DEAD_LETTER_CREATED = "dead_letter_created"
    WEBHOOK_SIGNATURE_INVALID = "webhook_signature_invalid"
    TRANSCRIPT_JOB_EXHAUSTED = "transcript_job_exhausted"
    STUCK_MEETINGS_FOUND = "stuck_meetings_found"
    WORKER_CRASHED = "worker_crashed"


DEFAULT_COOLDOWN_SECONDS = 300

COOLDOWN_SECONDS: dict[str, int] = {
    AlertType.STUCK_MEETINGS_FOUND: 3600,
    AlertType.WORKER_CRASHED: 900,
}

# alert_type -> monotonic deadline, used only while Redis is down
_local_cooldowns: dict[str, float] = {}


def _get_cooldown_seconds(alert_type: str) -> int:
    return COOLDOWN_SECONDS.get(alert_type, DEFAULT_COOLDOWN_SECONDS)


async def send_alert(
    alert_type: str,
    message: str,
    severity: str = "error",
    extra: Optional[dict] = None,
    respect_cooldown: bool = True,
) -> bool:
    """Log and post an alert. Returns False when the cooldown suppressed it."""
    if respect_cooldown and not await _acquire_cooldown(alert_type):
        return False

    from recapflow.utils.logging import get_correlation_id
    cid = get_correlation_id()

    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    suffix = f" (correlation_id={cid})" if cid else ""
    logger.log(level, "ALERT [%s]: %s%s", alert_type, message, suffix)

    await _send_webhook_alert(alert_type, message, cid, extra)
    return True


async def send_dead_letter_alert(entry_payload: dict) -> None:
    """
    Announce a new dead-letter entry.
    entry_payload carries platform, eventType, totalAttempts, error and id.
    """
    error = str(entry_payload.get("error") or "")[:100]
    await send_alert(
        AlertType.DEAD_LETTER_CREATED,
        f"Webhook moved to dead letter queue after {entry_payload.get('totalAttempts')} attempts "
        f"({entry_payload.get('platform')} / {entry_payload.get('eventType')}): {error}",
        severity="critical",
        extra={**entry_payload, "error": error},
        respect_cooldown=False,
    )


async def _acquire_cooldown(alert_type: str) -> bool:
    """True when no alert of this type went out within its cooldown window."""
    window = _get_cooldown_seconds(alert_type)
    try:
        from recapflow.utils.redis_client import get_redis
        redis = await get_redis()
        return bool(
            await redis.set(f"recapflow:alert_cooldown:{alert_type}", "1", nx=True, ex=window)
        )
    except Exception as e:
        logger.debug("Alert cooldown falling back to memory: %s", str(e))

    now = time.monotonic()
    if _local_cooldowns.get(alert_type, 0) > now:
        return False
    _local_cooldowns[alert_type] = now + window
    return True


def _alert_text(alert_type: str, message: str, correlation_id: Optional[str], extra: Optional[dict]) -> str:
    lines = [f"*{alert_type}*", message]
    if correlation_id:
        lines.append(f"`correlation_id: {correlation_id}`")
    lines.extend(f"`{key}: {value}`" for key, value in (extra or {}).items())
    return "\n".join(lines)


async def _send_webhook_alert(
    alert_type: str,
    message: str,
    correlation_id: Optional[str],
    extra: Optional[dict],
) -> None:
    """POST to the alert webhook. Delivery errors are logged, never raised."""
    from recapflow.config import get_settings
    url = get_settings().alert_webhook_url
    if not url:
        return

    import httpx

    text = _alert_text(alert_type, message, correlation_id, extra)
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            # Slack reads "text", Discord reads "content"
            response = await client.post(url, json={"text": text, "content": text})
            response.raise_for_status()
    except Exception as e:
        logger.warning("Alert webhook delivery failed for %s: %s", alert_type, str(e))
