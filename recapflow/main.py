"""
RecapFlow - meeting transcript ingestion for Zoom, Google Meet and Microsoft Teams.
Main FastAPI application entry point.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from recapflow.config import get_settings
from recapflow.api.router import api_router
from recapflow.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("recapflow")


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Injects a correlation ID into every request context and response header."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def _on_worker_exit(task: asyncio.Task) -> None:
    """Worker loops never return on their own; an exit here is a crash."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is None:
        return
    logger.critical("Worker %s crashed: %s", task.get_name(), str(exc))
    from recapflow.utils.alerting import AlertType, send_alert
    from recapflow.utils.background import spawn
    spawn(
        send_alert(AlertType.WORKER_CRASHED, f"Worker {task.get_name()} crashed: {exc}", severity="critical"),
        name=f"worker-crash-alert-{task.get_name()}",
    )


def _warn_missing_secrets(settings) -> None:
    if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
        missing = [
            name for name, value in (
                ("ZOOM_WEBHOOK_SECRET_TOKEN", settings.zoom_webhook_secret_token),
                ("MEET_PUBSUB_AUDIENCE", settings.meet_pubsub_audience),
                ("TEAMS_WEBHOOK_BEARER_TOKEN", settings.teams_webhook_bearer_token),
            ) if not value
        ]
        if missing:
            logger.warning("Webhook secrets not set, those platforms will be rejected: %s", ", ".join(missing))
    if not settings.operator_jwt_secret:
        logger.warning("OPERATOR_JWT_SECRET not set - operator API is disabled.")


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, traces_sample_rate=0.1, environment=settings.app_env)
        logger.info("Sentry initialized")
    except Exception as e:
        logger.warning("Sentry initialization failed: %s", str(e))


def _start_workers() -> list[asyncio.Task]:
    from recapflow.workers.retry_worker import run_retry_worker
    from recapflow.workers.stuck_meeting_sweeper import run_stuck_meeting_sweeper
    from recapflow.workers.transcript_worker import run_transcript_worker

    tasks = []
    for name, run in (
        ("transcript_worker", run_transcript_worker),
        ("retry_worker", run_retry_worker),
        ("stuck_meeting_sweeper", run_stuck_meeting_sweeper),
    ):
        task = asyncio.create_task(run(), name=name)
        task.add_done_callback(_on_worker_exit)
        tasks.append(task)
    logger.info("Background workers started: %s", ", ".join(t.get_name() for t in tasks))
    return tasks


async def _stop_workers(tasks: list[asyncio.Task], timeout: float = 10.0) -> None:
    """Cancel worker loops and wait for in-flight jobs to unwind."""
    for task in tasks:
        task.cancel()
    if not tasks:
        return
    _, pending = await asyncio.wait(tasks, timeout=timeout)
    if pending:
        logger.warning("%d workers did not stop within %.0fs", len(pending), timeout)
        await asyncio.gather(*pending, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("RecapFlow starting up (env=%s)", settings.app_env)
    _warn_missing_secrets(settings)
    _init_sentry(settings)

    worker_tasks = _start_workers()

    yield

    logger.info("RecapFlow shutting down - stopping %d workers...", len(worker_tasks))
    await _stop_workers(worker_tasks)

    from recapflow.database import dispose_engine
    from recapflow.utils.background import drain
    from recapflow.utils.redis_client import close_redis
    await drain(timeout=5.0)
    await close_redis()
    await dispose_engine()
    logger.info("RecapFlow shutdown complete")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="RecapFlow",
        description="Meeting transcript ingestion pipeline",
        version="1.0.0",
        lifespan=lifespan,
    )
    application.add_middleware(CorrelationIdMiddleware)
    application.include_router(api_router)
    return application


app = create_app()
