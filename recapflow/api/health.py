"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health          - liveness (always 200 while the app runs)
- GET /health/ready    - readiness: database required, Redis reported
- GET /health/workers  - background worker heartbeats
- GET /health/pipeline - ingestion backlog: due jobs, stuck work, dead letters
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from recapflow.database import get_db
from recapflow.utils.redis_client import get_redis

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
WORKER_NAMES = ("transcript_worker", "retry_worker", "stuck_meeting_sweeper")

# Backlog above these levels reports the pipeline as degraded
DUE_JOB_WARNING = 50
DEAD_LETTER_WARNING = 1


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {"status": "healthy", "timestamp": _now(), "version": VERSION}


@router.get("/health/ready")
async def readiness_check(db: AsyncSession = Depends(get_db)):
    """
    Readiness check - database and Redis connectivity.
    Redis down only degrades idempotency (locks fail open), so ingestion
    keeps running; the status still reports it.
    """
    checks = {"database": False, "redis": False}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": _now(),
    }


@router.get("/health/workers")
async def worker_health():
    """Heartbeat presence for each background worker (heartbeats expire by TTL)."""
    try:
        redis = await get_redis()
    except Exception as e:
        logger.warning("Worker heartbeat check failed: %s", str(e))
        return {"healthy": True, "note": "Unable to check worker heartbeats"}

    workers = {}
    for name in WORKER_NAMES:
        try:
            heartbeat = await redis.get(f"recapflow:worker_health:{name}")
        except Exception as e:
            logger.warning("Heartbeat read failed for %s: %s", name, str(e))
            heartbeat = None
        workers[name] = {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}
    return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}


@router.get("/health/pipeline")
async def pipeline_health(db: AsyncSession = Depends(get_db)):
    """Backlog counters for alerting dashboards."""
    from recapflow.models.meeting import Meeting
    from recapflow.models.webhook_failure import DeadLetterEntry
    from recapflow.services.meeting_state import MeetingStatus
    from recapflow.services.transcript_queue import get_transcript_queue

    queue = await get_transcript_queue().stats(db)

    meeting_rows = await db.execute(
        select(Meeting.status, func.count()).group_by(Meeting.status)
    )
    meetings = {status: count for status, count in meeting_rows.all()}

    dead_letters = (
        await db.execute(
            select(func.count()).select_from(DeadLetterEntry).where(DeadLetterEntry.resolved.is_(False))
        )
    ).scalar() or 0

    warnings = []
    if queue["due"] >= DUE_JOB_WARNING:
        warnings.append(f"{queue['due']} transcript jobs due")
    if dead_letters >= DEAD_LETTER_WARNING:
        warnings.append(f"{dead_letters} unresolved dead letter(s)")

    return {
        "status": "degraded" if warnings else "healthy",
        "warnings": warnings,
        "transcript_queue": queue,
        "meetings": {
            status: meetings.get(status, 0)
            for status in (
                MeetingStatus.PENDING, MeetingStatus.PROCESSING, MeetingStatus.READY,
                MeetingStatus.COMPLETED, MeetingStatus.FAILED,
            )
        },
        "unresolved_dead_letters": dead_letters,
        "timestamp": _now(),
    }
