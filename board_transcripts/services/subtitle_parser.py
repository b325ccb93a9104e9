from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

_TIMING_LINE = re.compile(
    r"^\s*(?P<start>\d{2,}:\d{2}:\d{2}[.,]\d{3})\s*-->\s*(?P<end>\d{2,}:\d{2}:\d{2}[.,]\d{3})(?:\s.*)?$",
)
_TIMESTAMP = re.compile(r"^(?P<h>\d{2,}):(?P<m>\d{2}):(?P<s>\d{2})[.,](?P<ms>\d{3})$")
_VOICE_SPAN = re.compile(r"^<v(?:\.[^\s>]*)?\s+(?P<name>[^>]+)>(?P<text>.*?)(?:</v>)?$")
_BRACKET_SPEAKER = re.compile(r"^\[(?P<name>[^\]]+)\]\s*[-:]?\s*(?P<text>.*)$")
_NAME_WITH_EMAIL = re.compile(
    r"^(?P<name>[^:<>]{1,60}?)\s*<(?P<email>[^<>\s@]+@[^<>\s]+)>\s*:\s*(?P<text>.*)$",
)
_INLINE_TAG = re.compile(r"</?(?:b|i|u|c|v|lang|ruby|rt)(?:[.\s][^>]*)?>")

_MAX_SPEAKER_PREFIX_LENGTH = 60
_MAX_SPEAKER_PREFIX_WHITESPACE = 4
_SKIPPED_BLOCK_PREFIXES = ("WEBVTT", "NOTE", "STYLE", "REGION")


class MalformedCueError(ValueError):
    pass


@dataclass(frozen=True)
class Cue:
    start: timedelta
    end: timedelta
    text: str
    speaker_name: str | None = None
    speaker_email: str | None = None


class SpeakerLine(Protocol):
    start: timedelta
    end: timedelta
    text: str
    speaker_name: str | None
    speaker_email: str | None


def parse(raw_text: str) -> list[Cue]:
    """Parse WebVTT-style subtitle text into ordered cues.

    Blocks that cannot be parsed are skipped so that one corrupt cue does not
    drop the rest of the transcript.
    """
    normalized = raw_text.replace("\ufeff", "").replace("\r\n", "\n").replace("\r", "\n")
    cues: list[Cue] = []
    for block in _split_blocks(normalized):
        try:
            cue = _parse_block(block)
        except MalformedCueError:
            continue
        if cue is not None:
            cues.append(cue)
    return cues


def parse_timestamp(raw_value: str) -> timedelta:
    match = _TIMESTAMP.match(raw_value.strip())
    if not match:
        raise MalformedCueError(f"Invalid cue timestamp: {raw_value!r}")
    minutes = int(match.group("m"))
    seconds = int(match.group("s"))
    if minutes >= 60 or seconds >= 60:
        raise MalformedCueError(f"Cue timestamp out of range: {raw_value!r}")
    return timedelta(
        hours=int(match.group("h")),
        minutes=minutes,
        seconds=seconds,
        milliseconds=int(match.group("ms")),
    )


def format_timestamp(value: timedelta) -> str:
    total_ms = max(int(value.total_seconds() * 1000 + 0.5), 0)
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, milliseconds = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{milliseconds:03d}"


def format_vtt(lines: Iterable[SpeakerLine]) -> str:
    parts = ["WEBVTT", ""]
    for line in sorted(lines, key=lambda item: item.start):
        parts.append(f"{format_timestamp(line.start)} --> {format_timestamp(line.end)}")
        speaker = line.speaker_name or line.speaker_email
        parts.append(f"{speaker}: {line.text}" if speaker else line.text)
        parts.append("")
    return "\n".join(parts) + "\n"


def _split_blocks(text: str) -> list[list[str]]:
    blocks: list[list[str]] = []
    current: list[str] = []
    for line in text.split("\n"):
        if line.strip():
            current.append(line)
            continue
        if current:
            blocks.append(current)
            current = []
    if current:
        blocks.append(current)
    return blocks


def _parse_block(lines: list[str]) -> Cue | None:
    timing_index = None
    for index, line in enumerate(lines):
        if "-->" in line:
            timing_index = index
            break
    if timing_index is None:
        if lines[0].strip().upper().startswith(_SKIPPED_BLOCK_PREFIXES):
            return None
        raise MalformedCueError("Cue block has no timing line.")

    match = _TIMING_LINE.match(lines[timing_index])
    if not match:
        raise MalformedCueError(f"Invalid timing line: {lines[timing_index]!r}")
    start = parse_timestamp(match.group("start"))
    end = parse_timestamp(match.group("end"))
    if end < start:
        raise MalformedCueError("Cue ends before it starts.")

    text_lines = [line.strip() for line in lines[timing_index + 1 :] if line.strip()]
    if not text_lines:
        raise MalformedCueError("Cue has no text.")

    speaker_name, speaker_email, first_line = _split_speaker(text_lines[0])
    text_lines[0] = first_line
    text = " ".join(_strip_inline_tags(line) for line in text_lines)
    text = " ".join(text.split())
    if not text:
        raise MalformedCueError("Cue has no text.")
    return Cue(
        start=start,
        end=end,
        text=text,
        speaker_name=speaker_name,
        speaker_email=speaker_email,
    )


def _split_speaker(line: str) -> tuple[str | None, str | None, str]:
    voice = _VOICE_SPAN.match(line)
    if voice:
        return voice.group("name").strip(), None, voice.group("text").strip()

    bracket = _BRACKET_SPEAKER.match(line)
    if bracket and bracket.group("name").strip():
        return bracket.group("name").strip(), None, bracket.group("text").strip()

    with_email = _NAME_WITH_EMAIL.match(line)
    if with_email and with_email.group("name").strip():
        return (
            with_email.group("name").strip(),
            with_email.group("email").strip(),
            with_email.group("text").strip(),
        )

    if ":" in line and not line.lower().startswith("http"):
        prefix, _, remainder = line.partition(":")
        candidate = prefix.strip()
        whitespace_count = sum(1 for char in candidate if char.isspace())
        if (
            candidate
            and len(prefix) <= _MAX_SPEAKER_PREFIX_LENGTH
            and whitespace_count <= _MAX_SPEAKER_PREFIX_WHITESPACE
            and remainder.strip()
        ):
            return candidate, None, remainder.strip()

    return None, None, line


def _strip_inline_tags(line: str) -> str:
    return _INLINE_TAG.sub("", line)
