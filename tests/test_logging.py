"""
Tests for recapflow/utils/logging.py - JSON formatter and context binding.
"""
import json
import logging

from recapflow.utils.logging import (
    StructuredJsonFormatter,
    correlation_scope,
    get_correlation_id,
    log_context,
    set_correlation_id,
)


def _record(level=logging.INFO, msg="hello %s", args=("world",), **extra) -> logging.LogRecord:
    record = logging.LogRecord("recapflow.test", level, __file__, 10, msg, args, None, func="handler")
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def _format(record) -> dict:
    return json.loads(StructuredJsonFormatter().format(record))


class TestFormatter:
    def test_basic_fields(self):
        entry = _format(_record())
        assert entry["level"] == "INFO"
        assert entry["module"] == "recapflow.test"
        assert entry["message"] == "hello world"
        assert entry["timestamp"].endswith("Z")
        assert "location" not in entry

    def test_warning_includes_location(self):
        entry = _format(_record(level=logging.WARNING))
        assert entry["location"].endswith("handler:10")

    def test_bound_context_and_extra_override(self):
        with log_context(platform="zoom", meeting_id="m-1", job_id=None):
            entry = _format(_record(meeting_id="m-2"))
        assert entry["platform"] == "zoom"
        assert entry["meeting_id"] == "m-2"
        assert "job_id" not in entry

    def test_context_released_after_block(self):
        with log_context(platform="teams"):
            pass
        assert "platform" not in _format(_record())


class TestCorrelationScope:
    def test_restores_outer_id(self):
        set_correlation_id("outer")
        with correlation_scope() as cid:
            assert get_correlation_id() == cid
            assert len(cid) == 32
            assert _format(_record())["correlation_id"] == cid
        assert get_correlation_id() == "outer"

    def test_explicit_id(self):
        with correlation_scope("abc") as cid:
            assert cid == "abc"
            assert get_correlation_id() == "abc"
