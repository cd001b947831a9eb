"""
Database models - import all models here so Alembic can discover them.
"""
from recapflow.models.meeting import Meeting
from recapflow.models.raw_event import RawEvent
from recapflow.models.transcript import Transcript
from recapflow.models.webhook_failure import WebhookFailure, DeadLetterEntry
from recapflow.models.transcript_job import TranscriptJob

__all__ = [
    "Meeting",
    "RawEvent",
    "Transcript",
    "WebhookFailure",
    "DeadLetterEntry",
    "TranscriptJob",
]
