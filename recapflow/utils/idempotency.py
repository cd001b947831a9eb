"""
Idempotency guard - Redis-based distributed lock with a 24-hour window.
Prevents duplicate processing of the same logical webhook event.

Keys are namespaced by platform so identical external ids from different
sources never collide. Every Redis call is raced against a hard timeout.
If Redis is unreachable or slow the guard FAILS OPEN: the event is processed
(a possible duplicate) rather than silently dropped.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from recapflow.utils.redis_client import get_redis
from recapflow.utils.timeouts import with_timeout

logger = logging.getLogger(__name__)

KEY_PREFIX = "recapflow:idempotency"
DEFAULT_TTL_SECONDS = 86400
DEFAULT_TIMEOUT_SECONDS = 5.0


def make_lock_key(key: str, namespace: str) -> str:
    """Build the namespaced Redis key for an event identifier."""
    return f"{KEY_PREFIX}:{namespace}:{key}"


class IdempotencyGuard:
    """Atomic set-if-absent lock over a shared Redis store."""

    def __init__(
        self,
        redis_factory: Callable[[], Awaitable] = get_redis,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._redis_factory = redis_factory
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds

    async def _redis(self):
        return await with_timeout(self._redis_factory(), self.timeout_seconds, "redis connect")

    async def acquire_lock(self, key: str, namespace: str, metadata: Optional[dict] = None) -> bool:
        """
        Claim an event. Returns True for the first caller (proceed),
        False for any later caller within the TTL (duplicate, skip).
        """
        lock_key = make_lock_key(key, namespace)
        value = json.dumps({
            "status": "processing",
            "acquired_at": datetime.now(timezone.utc).isoformat(),
            **(metadata or {}),
        })
        try:
            redis = await self._redis()
            was_set = await with_timeout(
                redis.set(lock_key, value, nx=True, ex=self.ttl_seconds),
                self.timeout_seconds,
                "idempotency acquire",
            )
        except Exception as e:
            logger.warning(
                "Idempotency lock unavailable for %s: %s. Proceeding (fail open).",
                lock_key, str(e),
            )
            return True

        if was_set:
            return True
        logger.info("Duplicate event suppressed: %s", lock_key)
        return False

    async def is_processed(self, key: str, namespace: str) -> bool:
        """Check whether an event was already marked processed."""
        lock_key = make_lock_key(key, namespace)
        try:
            redis = await self._redis()
            exists = await with_timeout(
                redis.exists(lock_key), self.timeout_seconds, "idempotency exists",
            )
            return bool(exists)
        except Exception as e:
            logger.warning("Idempotency check failed for %s: %s", lock_key, str(e))
            return False

    async def mark_processed(self, key: str, namespace: str, metadata: Optional[dict] = None) -> None:
        """Overwrite the lock with a processed marker and result metadata."""
        lock_key = make_lock_key(key, namespace)
        value = json.dumps({
            "status": "processed",
            "processed_at": datetime.now(timezone.utc).isoformat(),
            **(metadata or {}),
        }, default=str)
        try:
            redis = await self._redis()
            await with_timeout(
                redis.setex(lock_key, self.ttl_seconds, value),
                self.timeout_seconds,
                "idempotency mark",
            )
        except Exception as e:
            logger.warning("Failed to mark %s processed: %s", lock_key, str(e))

    async def get_metadata(self, key: str, namespace: str) -> Optional[dict]:
        """Return the JSON metadata stored with a lock, if any."""
        lock_key = make_lock_key(key, namespace)
        try:
            redis = await self._redis()
            raw = await with_timeout(redis.get(lock_key), self.timeout_seconds, "idempotency get")
        except Exception as e:
            logger.warning("Failed to read idempotency metadata for %s: %s", lock_key, str(e))
            return None
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            return None

    async def remove_lock(self, key: str, namespace: str) -> bool:
        """Release a lock so the event can be replayed manually."""
        lock_key = make_lock_key(key, namespace)
        try:
            redis = await self._redis()
            removed = await with_timeout(redis.delete(lock_key), self.timeout_seconds, "idempotency delete")
        except Exception as e:
            logger.warning("Failed to remove idempotency lock %s: %s", lock_key, str(e))
            return False
        logger.info("Idempotency lock removed: %s", lock_key)
        return bool(removed)


def get_idempotency_guard() -> IdempotencyGuard:
    """Guard configured from settings (FastAPI dependency and workers)."""
    from recapflow.config import get_settings
    settings = get_settings()
    return IdempotencyGuard(
        ttl_seconds=settings.idempotency_ttl_seconds,
        timeout_seconds=settings.idempotency_timeout_seconds,
    )
