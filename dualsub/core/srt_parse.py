"""
Reference SRT parsing and SRT timestamp helpers.
Malformed cue blocks are skipped with a warning, never raised.
"""

import re
import logging
from pathlib import Path

from dualsub.core.models import ReferenceEntry

logger = logging.getLogger(__name__)

_BLOCK_SPLIT_RE = re.compile(r'\r?\n[ \t]*\r?\n')
_LINE_SPLIT_RE = re.compile(r'\r?\n')
_TIMESTAMP_RE = re.compile(r'^(\d{1,2}):(\d{2}):(\d{2})(?:[,.](\d{1,3}))?$')
_TIMING_SEP = " --> "


def timestamp_to_seconds(timestamp: str) -> float | None:
    """Convert HH:MM:SS,mmm (comma or period separator) to seconds."""
    match = _TIMESTAMP_RE.match(timestamp.strip())
    if not match:
        return None
    hours, minutes, seconds, millis = match.groups()
    total = int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if millis:
        total += int(millis.ljust(3, '0')) / 1000.0
    return total


def seconds_to_timestamp(seconds: float) -> str:
    """Convert seconds to an HH:MM:SS,mmm timestamp."""
    total_ms = int(round(max(0.0, seconds) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def parse_srt_timing(timing: str) -> tuple[float, float] | None:
    """Parse 'start --> end'. Returns (start, end) seconds or None."""
    parts = timing.strip().split(_TIMING_SEP)
    if len(parts) != 2:
        return None
    start = timestamp_to_seconds(parts[0])
    end = timestamp_to_seconds(parts[1])
    if start is None or end is None:
        return None
    return start, end


def format_srt_timing(start_sec: float, end_sec: float) -> str:
    return f"{seconds_to_timestamp(start_sec)}{_TIMING_SEP}{seconds_to_timestamp(end_sec)}"


def parse_srt_text(text: str, offset_sec: float = 0.0,
                   source: str = "<text>") -> list[ReferenceEntry]:
    """
    Parse SRT content into reference entries sorted by start time.

    offset_sec is added to every timestamp; cues pushed below zero are dropped.
    """
    if text.startswith('\ufeff'):
        text = text[1:]

    entries: list[ReferenceEntry] = []
    for block in _BLOCK_SPLIT_RE.split(text):
        if not block.strip():
            continue
        lines = _LINE_SPLIT_RE.split(block.strip('\r\n'))
        if len(lines) < 3:
            logger.warning("Malformed SRT block in %s (too few lines): %s",
                           source, lines[0].strip())
            continue

        try:
            cue_id = int(lines[0].strip())
        except ValueError:
            logger.warning("Malformed SRT block in %s (invalid id): %s",
                           source, lines[0].strip())
            continue

        timing = parse_srt_timing(lines[1])
        if timing is None:
            logger.warning("Malformed SRT block in %s (invalid timing): %s",
                           source, lines[1].strip())
            continue

        start, end = timing[0] + offset_sec, timing[1] + offset_sec
        if start < 0 or end < 0:
            logger.warning("Skipping cue %d in %s: negative time after offset %ss",
                           cue_id, source, offset_sec)
            continue

        entries.append(ReferenceEntry(
            id=cue_id,
            timing=format_srt_timing(start, end),
            start_sec=start,
            end_sec=end,
            text='\n'.join(lines[2:]),
        ))

    entries.sort(key=lambda e: e.start_sec)
    logger.debug("Parsed %d cues from %s", len(entries), source)
    return entries


def parse_srt_file(path: Path, offset_sec: float = 0.0) -> list[ReferenceEntry]:
    """Read and parse an SRT file. OSError propagates to the caller."""
    path = Path(path)
    content = path.read_text(encoding='utf-8', errors='replace')
    return parse_srt_text(content, offset_sec=offset_sec, source=str(path))
