"""
Tests for recapflow/transcripts/formats.py - Meet entries and Docs exports to WebVTT.
"""
from recapflow.transcripts.formats import (
    entries_to_vtt,
    format_vtt_time,
    participant_display_name,
    plain_text_to_vtt,
)
from recapflow.transcripts.vtt_parser import parse_vtt


class TestFormatVttTime:
    def test_zero(self):
        assert format_vtt_time(0) == "00:00:00.000"

    def test_hours(self):
        assert format_vtt_time(3723456) == "01:02:03.456"

    def test_negative_clamped(self):
        assert format_vtt_time(-5) == "00:00:00.000"


class TestEntriesToVtt:
    def test_renders_and_parses(self):
        entries = [
            {
                "participant": "conferenceRecords/c1/participants/p1",
                "text": "Morning all",
                "startTime": "2026-01-05T10:00:00.000Z",
                "endTime": "2026-01-05T10:00:02.500Z",
            },
            {
                "participant": "conferenceRecords/c1/participants/p2",
                "text": "Hi there",
                "startTime": "2026-01-05T10:00:03Z",
                "endTime": "2026-01-05T10:00:04Z",
            },
        ]
        names = {"conferenceRecords/c1/participants/p1": "Priya"}
        vtt = entries_to_vtt(entries, names)

        assert vtt.startswith("WEBVTT")
        assert "10:00:00.000 --> 10:00:02.500" in vtt
        parsed = parse_vtt(vtt)
        assert [s.speaker for s in parsed.segments] == ["Priya", "Unknown"]
        assert parsed.word_count == 4


class TestParticipantDisplayName:
    def test_signed_in_user(self):
        assert participant_display_name({"signedinUser": {"displayName": "Ana"}}) == "Ana"

    def test_phone_user(self):
        assert participant_display_name({"phoneUser": {"displayName": "+1 555"}}) == "+1 555"

    def test_missing(self):
        assert participant_display_name({}) == "Unknown"


class TestPlainTextToVtt:
    def test_docs_export(self):
        text = (
            "00:00:00\n"
            "Ana: Let's review the roadmap\n"
            "00:01:30\n"
            "Ben: Sounds good\n"
            "and one more thing\n"
        )
        parsed = parse_vtt(plain_text_to_vtt(text))

        assert [s.speaker for s in parsed.segments] == ["Ana", "Ben"]
        assert parsed.segments[0].start_time == 0
        assert parsed.segments[0].end_time == 90000
        assert parsed.segments[1].start_time == 90000
        assert parsed.segments[1].text == "Sounds good and one more thing"

    def test_minute_second_markers(self):
        parsed = parse_vtt(plain_text_to_vtt("01:05\nAna: hello\n"))
        assert parsed.segments[0].start_time == 65000

    def test_empty(self):
        assert parse_vtt(plain_text_to_vtt("")).segments == []
