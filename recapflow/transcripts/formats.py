"""
Normalizers that turn non-VTT transcript sources into WebVTT caption text
so every platform goes through the same parser.
"""
import re
from datetime import datetime
from typing import Optional

DOCS_TIMESTAMP = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")
DOCS_SPEAKER_LINE = re.compile(r"^([^:]{1,80}):\s+(.+)$")


def format_vtt_time(ms: int) -> str:
    """Milliseconds to HH:MM:SS.mmm."""
    hours, rem = divmod(max(ms, 0), 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    seconds, millis = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def _iso_to_vtt_time(value: Optional[str]) -> str:
    """ISO-8601 instant to HH:MM:SS.mmm of its UTC wall-clock time."""
    if not value:
        return format_vtt_time(0)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return f"{parsed.hour:02d}:{parsed.minute:02d}:{parsed.second:02d}.{parsed.microsecond // 1000:03d}"


def entries_to_vtt(entries: list[dict], participant_names: dict[str, str]) -> str:
    """
    Render Meet transcript entries as WebVTT.
    Each entry carries participant, text, startTime and endTime.
    """
    lines = ["WEBVTT", ""]
    for index, entry in enumerate(entries, start=1):
        speaker = participant_names.get(entry.get("participant", ""), "Unknown")
        lines.append(str(index))
        lines.append(f"{_iso_to_vtt_time(entry.get('startTime'))} --> {_iso_to_vtt_time(entry.get('endTime'))}")
        lines.append(f"{speaker}: {entry.get('text', '')}")
        lines.append("")
    return "\n".join(lines)


def participant_display_name(participant: dict) -> str:
    """Best display name for a Meet participant resource."""
    for kind in ("signedinUser", "anonymousUser", "phoneUser"):
        name = (participant.get(kind) or {}).get("displayName")
        if name:
            return name
    return "Unknown"


def plain_text_to_vtt(text: str) -> str:
    """
    Convert a Docs-exported transcript ("HH:MM:SS" markers followed by
    "Speaker: text" lines) into WebVTT. Lines without a speaker continue
    the previous cue.
    """
    cues: list[list] = []  # [start_ms, speaker, text]
    current_ms = 0

    for raw_line in (text or "").splitlines():
        line = raw_line.strip().lstrip("﻿")
        if not line:
            continue
        stamp = DOCS_TIMESTAMP.match(line)
        if stamp:
            if stamp.group(3) is not None:
                h, m, s = int(stamp.group(1)), int(stamp.group(2)), int(stamp.group(3))
            else:
                h, m, s = 0, int(stamp.group(1)), int(stamp.group(2))
            current_ms = (h * 3600 + m * 60 + s) * 1000
            continue
        speaker_line = DOCS_SPEAKER_LINE.match(line)
        if speaker_line:
            cues.append([current_ms, speaker_line.group(1).strip(), speaker_line.group(2).strip()])
        elif cues:
            cues[-1][2] = f"{cues[-1][2]} {line}"

    lines = ["WEBVTT", ""]
    for index, (start_ms, speaker, cue_text) in enumerate(cues, start=1):
        next_start = cues[index][0] if index < len(cues) else start_ms
        end_ms = max(next_start, start_ms)
        lines.append(str(index))
        lines.append(f"{format_vtt_time(start_ms)} --> {format_vtt_time(end_ms)}")
        lines.append(f"{speaker}: {cue_text}")
        lines.append("")
    return "\n".join(lines)
