"""
WebVTT caption parser.

Converts timestamped, speaker-tagged caption cues into:
- an ordered list of speaker segments (consecutive cues from the same
  speaker merged into one segment spanning their min/max timestamps)
- the full concatenated text ("Speaker: text" blocks)
- a word count of the spoken text

Speakers are recognized from WebVTT voice tags (<v Name>, used by Teams)
or a "Name: text" prefix (Zoom, Meet). Times are in milliseconds.
"""
import re
from dataclasses import dataclass, field, asdict

UNKNOWN_SPEAKER = "Unknown"

TIMESTAMP_LINE = re.compile(
    r"(\d{1,2}:\d{2}(?::\d{2})?(?:[.,]\d{1,3})?)\s*-->\s*(\d{1,2}:\d{2}(?::\d{2})?(?:[.,]\d{1,3})?)"
)
VOICE_TAG = re.compile(r"<v(?:\.[^\s>]*)?\s+([^>]+)>")
HTML_TAG = re.compile(r"<[^>]*>")
SPEAKER_PREFIX = re.compile(r"^([^:]{1,80}):\s*(.*)$", re.DOTALL)
CUE_NUMBER = re.compile(r"^\d+$")
BLOCK_HEADERS = ("NOTE", "STYLE", "REGION")


@dataclass
class SpeakerSegment:
    speaker: str
    text: str
    start_time: int
    end_time: int


@dataclass
class ParsedTranscript:
    full_text: str
    segments: list[SpeakerSegment] = field(default_factory=list)
    word_count: int = 0

    def segments_as_dicts(self) -> list[dict]:
        return [asdict(s) for s in self.segments]


def parse_timestamp(value: str) -> int:
    """Parse "HH:MM:SS.mmm" or "MM:SS.mmm" into milliseconds."""
    parts = value.strip().replace(",", ".").split(":")
    hours = 0
    if len(parts) == 3:
        hours = int(parts[0])
        parts = parts[1:]
    minutes = int(parts[0])
    seconds = float(parts[1])
    return round((hours * 3600 + minutes * 60 + seconds) * 1000)


def _extract_speaker(text: str) -> tuple[str, str]:
    """Split cue text into (speaker, spoken text)."""
    voice = VOICE_TAG.search(text)
    if voice:
        speaker = voice.group(1).strip()
        return speaker or UNKNOWN_SPEAKER, HTML_TAG.sub("", text).strip()

    clean = HTML_TAG.sub("", text).strip()
    match = SPEAKER_PREFIX.match(clean)
    if match and match.group(1).strip() and not match.group(1).strip().isdigit():
        return match.group(1).strip(), match.group(2).strip()
    return UNKNOWN_SPEAKER, clean


def _parse_cues(caption_text: str) -> list[SpeakerSegment]:
    cues: list[SpeakerSegment] = []
    timing = None
    buffer: list[str] = []
    in_block = False

    def flush():
        if timing is not None and buffer:
            speaker, text = _extract_speaker(" ".join(buffer))
            if text:
                cues.append(SpeakerSegment(speaker, text, timing[0], timing[1]))

    for raw_line in caption_text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        line = raw_line.strip()

        if not line:
            flush()
            timing, buffer, in_block = None, [], False
            continue
        if in_block:
            continue
        if timing is None and (line.startswith("WEBVTT") or line.split(" ", 1)[0] in BLOCK_HEADERS):
            in_block = not line.startswith("WEBVTT")
            continue

        stamp = TIMESTAMP_LINE.search(line)
        if stamp:
            flush()
            buffer = []
            timing = (parse_timestamp(stamp.group(1)), parse_timestamp(stamp.group(2)))
            continue

        if timing is None:
            # Cue identifier or stray header text
            continue
        if CUE_NUMBER.match(line):
            continue
        buffer.append(line)

    flush()
    return cues


def merge_consecutive_segments(cues: list[SpeakerSegment]) -> list[SpeakerSegment]:
    """Merge runs of cues from the same speaker into single segments."""
    merged: list[SpeakerSegment] = []
    for cue in cues:
        last = merged[-1] if merged else None
        if last is not None and last.speaker == cue.speaker:
            last.text = f"{last.text} {cue.text}"
            last.start_time = min(last.start_time, cue.start_time)
            last.end_time = max(last.end_time, cue.end_time)
        else:
            merged.append(SpeakerSegment(cue.speaker, cue.text, cue.start_time, cue.end_time))
    return merged


def parse_vtt(caption_text: str) -> ParsedTranscript:
    """Parse WebVTT caption text into structured speaker segments."""
    segments = merge_consecutive_segments(_parse_cues(caption_text or ""))
    full_text = "\n\n".join(f"{s.speaker}: {s.text}" for s in segments)
    word_count = sum(len(s.text.split()) for s in segments)
    return ParsedTranscript(full_text=full_text, segments=segments, word_count=word_count)
