"""
Retry worker - replays recorded webhook failures.
Runs every 60 seconds, picks the oldest pending failures where next_retry_at <= now.
"""
import asyncio
import logging

from recapflow.database import async_session_factory
from recapflow.utils.logging import correlation_scope, log_context
from recapflow.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
BATCH_SIZE = 10


async def run_retry_worker():
    """Main retry worker loop. Runs continuously."""
    logger.info("Retry worker started")

    while True:
        try:
            processed = await process_due_failures()
            if processed > 0:
                logger.info("Retry worker replayed %d webhook failure(s)", processed)
        except Exception as e:
            logger.error("Retry worker error: %s", str(e), exc_info=True)

        await write_heartbeat("retry_worker", 300)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


async def process_due_failures(router=None, retry_manager=None) -> int:
    """Replay due failures. Returns count attempted."""
    from recapflow.services.webhook_retry import get_retry_manager
    from recapflow.webhooks.router import EventRouter

    retry_manager = retry_manager or get_retry_manager()
    router = router or EventRouter(retry_manager=retry_manager)
    processed = 0

    async with async_session_factory() as db:
        failures = await retry_manager.get_due_for_retry(db, limit=BATCH_SIZE)

        for failure in failures:
            with correlation_scope(), log_context(
                worker="retry_worker", failure_id=str(failure.id), platform=failure.platform,
            ):
                await retry_manager.mark_retry_in_progress(db, failure)
                await db.commit()

                try:
                    result = await router.replay_failure(db, failure)
                    error = result.error if result.action == "failed" else None
                except Exception as e:
                    await db.rollback()
                    error = str(e) or type(e).__name__
                    logger.error("Replay of failure %s raised: %s", str(failure.id)[:8], error, exc_info=True)

                # Routing commits or rolls back, so reload before updating
                await db.refresh(failure)
                if error is None:
                    await retry_manager.mark_retry_successful(db, failure)
                else:
                    logger.warning(
                        "Retry failed for %s (attempt %d): %s",
                        str(failure.id)[:8], failure.attempts + 1, error[:200],
                    )
                    await retry_manager.handle_retry_failure(db, failure, error)
                await db.commit()
                processed += 1

    return processed
