"""
JSON log lines carrying the pipeline context of whatever is being processed.

A line looks like:
    {"timestamp": "2026-01-01T12:00:00.123456Z", "level": "INFO",
     "correlation_id": "9f0c...", "module": "recapflow.webhooks.router",
     "message": "...", "platform": "zoom", "meeting_id": "..."}

Request handlers get a correlation ID from CorrelationIdMiddleware. Workers
open correlation_scope() per job or retry so replayed events trace back to
one ID. log_context() binds the pipeline fields below for a block of code;
the same names passed via extra= win over the bound values.
"""
import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

CONTEXT_FIELDS = (
    "worker", "platform", "event_type", "meeting_id", "raw_event_id", "job_id", "failure_id",
)

correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
log_context_ctx: ContextVar[dict] = ContextVar("log_context", default={})


def get_correlation_id() -> Optional[str]:
    return correlation_id_ctx.get()


def set_correlation_id(cid: str) -> None:
    correlation_id_ctx.set(cid)


def generate_correlation_id() -> str:
    """UUID4 hex, 32 chars."""
    return uuid.uuid4().hex


@contextmanager
def correlation_scope(cid: Optional[str] = None) -> Iterator[str]:
    """Run a block under its own correlation ID, restoring the outer one afterwards."""
    cid = cid or generate_correlation_id()
    token = correlation_id_ctx.set(cid)
    try:
        yield cid
    finally:
        correlation_id_ctx.reset(token)


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """Bind pipeline fields to every log line emitted inside the block. None values are dropped."""
    bound = {key: str(value) for key, value in fields.items() if value is not None}
    token = log_context_ctx.set({**log_context_ctx.get(), **bound})
    try:
        yield
    finally:
        log_context_ctx.reset(token)


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class StructuredJsonFormatter(logging.Formatter):
    """Single-line JSON. Warnings and above also carry the source location."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "correlation_id": get_correlation_id(),
            "module": record.name,
            "message": record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = f"{record.module}.{record.funcName}:{record.lineno}"

        entry.update(log_context_ctx.get())
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


def configure_structured_logging(log_level: str = "INFO") -> None:
    """
    Install the JSON formatter on a single root stream handler.
    Call once at startup, before workers start logging.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(StructuredJsonFormatter())
    root.addHandler(handler)

    # Per-request access and SQL echo lines drown out pipeline logs
    for noisy in ("uvicorn.access", "sqlalchemy.engine", "httpcore", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
