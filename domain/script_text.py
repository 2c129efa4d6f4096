"""Domain types and line segmentation for text_to_video_studio."""

from __future__ import annotations

import re
from typing import Tuple

INVALID_CONFIG_CODE = "text_to_video.input.invalid_config"
INVALID_DURATION_CODE = "text_to_video.input.invalid_duration"
FONT_DIR_CODE = "text_to_video.input.fonts_missing"
FONT_LOAD_CODE = "text_to_video.input.fonts_unloadable"

MAX_LINE_CHARACTERS = 42
MIN_DURATION_SECONDS = 4
MAX_DURATION_SECONDS = 14
FALLBACK_LINE = "Your story starts here."
DEFAULT_SCRIPT = (
    "Welcome to the future of text-to-video.\n"
    "Every word comes to life with cinematic motion.\n"
    "Craft captivating stories in seconds."
)

LINE_BREAK_PATTERN = re.compile(r"\r?\n")
SENTENCE_BREAK_PATTERN = re.compile(r"(?<=[.!?])\s+")


class ScriptValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def split_sentences(script: str) -> Tuple[str, ...]:
    """Split a script into trimmed, non-empty sentence units."""
    units: list[str] = []
    for raw_line in LINE_BREAK_PATTERN.split(script):
        for part in SENTENCE_BREAK_PATTERN.split(raw_line.strip()):
            trimmed = part.strip()
            if trimmed:
                units.append(trimmed)
    return tuple(units)


def pack_words(unit: str, max_characters: int) -> Tuple[str, ...]:
    """Greedily pack words into lines no longer than max_characters.

    A single word longer than the budget is emitted on its own line rather
    than being broken apart.
    """
    lines: list[str] = []
    current = ""
    for word in unit.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) > max_characters:
            if current:
                lines.append(current)
            current = word
        else:
            current = candidate
    if current:
        lines.append(current)
    return tuple(lines)


def segment_script(
    script: str, max_characters: int = MAX_LINE_CHARACTERS
) -> Tuple[str, ...]:
    """Turn a free-form script into display lines.

    The result always contains at least one line: an empty or whitespace-only
    script yields the fallback line.
    """
    lines: list[str] = []
    for unit in split_sentences(script.replace("\ufeff", "")):
        if len(unit) <= max_characters:
            lines.append(unit)
            continue
        lines.extend(pack_words(unit, max_characters))

    if not lines:
        return (FALLBACK_LINE,)
    return tuple(lines)


def validate_duration_seconds(duration_seconds: int) -> int:
    """Validate a clip duration expressed in whole seconds."""
    if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int):
        raise ScriptValidationError(
            INVALID_DURATION_CODE,
            f"duration must be a whole number of seconds: {duration_seconds!r}",
        )
    if duration_seconds < MIN_DURATION_SECONDS or duration_seconds > MAX_DURATION_SECONDS:
        raise ScriptValidationError(
            INVALID_DURATION_CODE,
            f"duration must be between {MIN_DURATION_SECONDS} and "
            f"{MAX_DURATION_SECONDS} seconds: {duration_seconds}",
        )
    return duration_seconds
