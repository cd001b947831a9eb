"""
Tests for recapflow/transcripts/vtt_parser.py - caption parsing and speaker merging.
"""
from recapflow.transcripts.vtt_parser import (
    UNKNOWN_SPEAKER,
    SpeakerSegment,
    merge_consecutive_segments,
    parse_timestamp,
    parse_vtt,
)


class TestParseTimestamp:
    def test_hours_minutes_seconds(self):
        assert parse_timestamp("01:02:03.456") == 3723456

    def test_minutes_seconds(self):
        assert parse_timestamp("02:05.500") == 125500

    def test_comma_separator(self):
        assert parse_timestamp("00:00:01,250") == 1250


class TestParseVtt:
    def test_merges_consecutive_speaker_cues(self, sample_vtt):
        parsed = parse_vtt(sample_vtt)

        assert len(parsed.segments) == 2
        alice, bob = parsed.segments
        assert alice.speaker == "Alice"
        assert alice.text == "Hello everyone let's get started"
        assert alice.start_time == 0
        assert alice.end_time == 5000
        assert bob.speaker == "Bob"
        assert bob.start_time == 5500
        assert bob.end_time == 8000
        assert parsed.word_count == 7

    def test_full_text_blocks(self, sample_vtt):
        parsed = parse_vtt(sample_vtt)
        assert parsed.full_text == "Alice: Hello everyone let's get started\n\nBob: Sounds good"

    def test_voice_tags(self):
        """Teams captions carry the speaker in a <v> tag."""
        text = (
            "WEBVTT\n\n"
            "0f6a/1\n00:00:01.000 --> 00:00:03.000\n<v Dana Scully>The truth is out there</v>\n\n"
            "0f6a/2\n00:00:03.000 --> 00:00:04.000\n<v Fox Mulder>I want to believe</v>\n"
        )
        parsed = parse_vtt(text)
        assert [s.speaker for s in parsed.segments] == ["Dana Scully", "Fox Mulder"]
        assert parsed.segments[0].text == "The truth is out there"
        assert parsed.word_count == 9

    def test_cue_without_speaker_is_unknown(self):
        parsed = parse_vtt("WEBVTT\n\n00:00:00.000 --> 00:00:01.000\njust words here\n")
        assert parsed.segments[0].speaker == UNKNOWN_SPEAKER
        assert parsed.word_count == 3

    def test_note_blocks_ignored(self):
        text = (
            "WEBVTT\n\n"
            "NOTE this is a comment\n00:00:00.000 --> 00:00:01.000 should be skipped\n\n"
            "00:00:01.000 --> 00:00:02.000\nAlice: hi\n"
        )
        parsed = parse_vtt(text)
        assert len(parsed.segments) == 1
        assert parsed.segments[0].text == "hi"

    def test_multiline_cue_joined(self):
        text = "WEBVTT\n\n00:00:00.000 --> 00:00:02.000\nAlice: first line\nsecond line\n"
        parsed = parse_vtt(text)
        assert parsed.segments[0].text == "first line second line"

    def test_crlf_line_endings(self, sample_vtt):
        parsed = parse_vtt(sample_vtt.replace("\n", "\r\n"))
        assert len(parsed.segments) == 2
        assert parsed.word_count == 7

    def test_empty_input(self):
        parsed = parse_vtt("")
        assert parsed.segments == []
        assert parsed.full_text == ""
        assert parsed.word_count == 0

    def test_segments_as_dicts(self, sample_vtt):
        dicts = parse_vtt(sample_vtt).segments_as_dicts()
        assert dicts[1] == {"speaker": "Bob", "text": "Sounds good", "start_time": 5500, "end_time": 8000}


class TestMergeConsecutiveSegments:
    def test_non_adjacent_same_speaker_not_merged(self):
        cues = [
            SpeakerSegment("A", "one", 0, 1000),
            SpeakerSegment("B", "two", 1000, 2000),
            SpeakerSegment("A", "three", 2000, 3000),
        ]
        merged = merge_consecutive_segments(cues)
        assert [s.speaker for s in merged] == ["A", "B", "A"]

    def test_input_not_mutated(self):
        cues = [SpeakerSegment("A", "one", 0, 1000), SpeakerSegment("A", "two", 1000, 2000)]
        merged = merge_consecutive_segments(cues)
        assert merged[0].text == "one two"
        assert cues[0].text == "one"
