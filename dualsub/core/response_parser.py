"""
LLM response parsing → subtitle entries.

Reads <subline> blocks from fenced markdown blocks first, then from the bare
text outside them. Nothing here raises on bad input: every problem becomes a
warning-severity ProcessingIssue with a line number and context snippet, and
the offending fragment is skipped.
"""

import re
import logging
from dataclasses import dataclass, field

from dualsub.core.constants import IssueType, Severity, CONTEXT_SNIPPET_LEN
from dualsub.core.models import SubtitleEntry, ProcessingIssue
from dualsub.core.prompt_builder import language_tag

logger = logging.getLogger(__name__)

_MARKDOWN_BLOCK_RE = re.compile(r'```(?:xml)?\s*\n?([\s\S]*?)\n?```')
_SUBLINE_RE = re.compile(r'<subline>([\s\S]*?)</subline>', re.IGNORECASE)
_SUBLINE_OPEN_RE = re.compile(r'<subline>', re.IGNORECASE)
_CLOSING_TAG_RE = re.compile(r'</([^>]+)>')
_NUMBER_TAG_HINT_RE = re.compile(r'</?(?:original_number|number|id)', re.IGNORECASE)
_LEADING_INT_RE = re.compile(r'\s*([+-]?\d+)')

NUMBER_TAGS = ("original_number", "number", "id")
LINE_TAGS = ("original_line",)
TIMING_TAGS = ("original_timing", "timing")
ENGLISH_TAGS = ("better_english_translation", "english_translation", "english")
ENGLISH_KEY = "english"

_TIMING_SEP = " --> "


@dataclass
class ParseResult:
    entries: list[SubtitleEntry] = field(default_factory=list)
    issues: list[ProcessingIssue] = field(default_factory=list)


class _ResponseParser:
    """Single-use parser holding the issue list for one response."""

    def __init__(self, content: str, chunk_part: int, target_languages: list[str],
                 attempt: int):
        self.content = content
        self.chunk_part = chunk_part
        self.target_languages = list(target_languages)
        self.attempt = attempt
        self.issues: list[ProcessingIssue] = []
        self.entries: list[SubtitleEntry] = []
        self._seen_ids: set[str] = set()

    # ── Issue helpers ─────────────────────────────────────────────────

    def _line_number(self, index: int) -> int:
        index = max(0, min(index, len(self.content)))
        return self.content.count('\n', 0, index) + 1

    def _issue(self, issue_type: str, message: str, index: int | None = None,
               snippet: str | None = None, subtitle_id: str | None = None):
        if snippet is None and index is not None:
            snippet = self.content[index:index + CONTEXT_SNIPPET_LEN + 1]
        context = None
        if snippet is not None:
            context = snippet[:CONTEXT_SNIPPET_LEN]
            if len(snippet) > CONTEXT_SNIPPET_LEN:
                context += "..."
        self.issues.append(ProcessingIssue(
            type=issue_type,
            severity=Severity.WARNING,
            message=message,
            chunk_part=self.chunk_part,
            subtitle_id=subtitle_id,
            context=context,
            line_number=self._line_number(index) if index is not None else None,
        ))

    # ── Tag extraction ────────────────────────────────────────────────

    def _extract_tag(self, block: str, tag_names, block_index: int,
                     current_id: str | None = None) -> str | None:
        """
        Content of the first matching tag among ``tag_names``, up to the next
        closing-tag marker. A mismatched closing name still yields the content.
        """
        for tag in tag_names:
            open_match = re.search(rf'<{re.escape(tag)}(\s+[^>]*)?>', block, re.IGNORECASE)
            if not open_match:
                continue

            value_start = open_match.end()
            close_index = block.find('</', value_start)
            if close_index == -1:
                self._issue(
                    IssueType.MALFORMED_TAG,
                    f"Found opening tag '<{tag}>' but no closing tag marker '</' followed it.",
                    block_index + open_match.start(),
                    snippet=block[open_match.start():],
                    subtitle_id=current_id,
                )
                return None

            value = block[value_start:close_index].strip()
            closing = _CLOSING_TAG_RE.match(block, close_index)
            if closing and closing.group(1).strip().lower() != tag.lower():
                self._issue(
                    IssueType.MALFORMED_TAG,
                    f"Found opening tag '<{tag}>' but next closing tag was "
                    f"'</{closing.group(1).strip()}>'. Using content anyway.",
                    block_index + open_match.start(),
                    snippet=block[open_match.start():closing.end() + 10],
                    subtitle_id=current_id,
                )
            return value
        return None

    def _parse_timing(self, timing: str, entry_id: str, index: int):
        parts = timing.split(_TIMING_SEP)
        if len(parts) != 2:
            self._issue(IssueType.INVALID_TIMING_FORMAT,
                        f"Invalid timing format (expected -->): {timing}",
                        index, snippet=timing, subtitle_id=entry_id)
            return None, None
        try:
            start = _time_to_seconds(parts[0].strip())
            end = _time_to_seconds(parts[1].strip())
        except ValueError as e:
            self._issue(IssueType.INVALID_TIMING_FORMAT,
                        f"Failed to parse timing components: {timing} ({e})",
                        index, snippet=timing, subtitle_id=entry_id)
            return None, None
        if end <= start:
            self._issue(IssueType.INVALID_TIMING_VALUE,
                        f"Invalid timing values: {timing}",
                        index, snippet=timing, subtitle_id=entry_id)
            return None, None
        return start, end

    def _parse_subline(self, block: str, index: int, source_format: str) -> SubtitleEntry | None:
        entry_id = self._extract_tag(block, NUMBER_TAGS, index)
        if not entry_id:
            if _NUMBER_TAG_HINT_RE.search(block):
                self._issue(IssueType.EXTRACTION_FAILED,
                            "Found a number tag but failed to extract its content.",
                            index, snippet=block)
            else:
                self._issue(IssueType.NUMBER_NOT_FOUND,
                            "Missing <original_number> tag.",
                            index, snippet=block)
            return None

        original_line = self._extract_tag(block, LINE_TAGS, index, entry_id)
        timing = self._extract_tag(block, TIMING_TAGS, index, entry_id)

        translations = {ENGLISH_KEY: self._extract_tag(block, ENGLISH_TAGS, index, entry_id)}
        for language in self.target_languages:
            tag = f"{language_tag(language)}_translation"
            translations[language] = self._extract_tag(block, (tag,), index, entry_id)

        if all(v is None for v in translations.values()):
            self._issue(IssueType.TEXT_NOT_FOUND,
                        "Found an id but no English or target language translation.",
                        index, snippet=block, subtitle_id=entry_id)

        start = end = None
        if timing:
            start, end = self._parse_timing(timing, entry_id, index)

        return SubtitleEntry(
            original_id=entry_id,
            translations=translations,
            original_line=original_line,
            original_timing=timing,
            start_sec=start,
            end_sec=end,
            source_chunk=self.chunk_part,
            attempt=self.attempt,
            source_format=source_format,
        )

    def _accept(self, entry: SubtitleEntry | None, index: int, source_format: str):
        if entry is None:
            return
        if entry.original_id in self._seen_ids:
            self._issue(IssueType.DUPLICATE_ID,
                        f"Duplicate id {entry.original_id} ({source_format}), keeping the first.",
                        index, subtitle_id=entry.original_id)
            return
        self._seen_ids.add(entry.original_id)
        self.entries.append(entry)

    def _report_unclosed(self, text: str, offset: int, closed: list[tuple[int, int]]):
        """Warn about <subline> openings with no closing tag, usually cut-off output."""
        for opening in _SUBLINE_OPEN_RE.finditer(text):
            if any(start <= opening.start() < end for start, end in closed):
                continue
            self._issue(IssueType.MALFORMED_TAG,
                        "Found <subline> with no closing </subline>; output may be truncated.",
                        offset + opening.start())

    # ── Driver ────────────────────────────────────────────────────────

    def parse(self) -> ParseResult:
        processed: list[tuple[int, int]] = []

        for md in _MARKDOWN_BLOCK_RE.finditer(self.content):
            processed.append((md.start(), md.end()))
            raw_block = md.group(1)
            block = raw_block.strip()
            if not block:
                self._issue(IssueType.MARKDOWN_BLOCK_EMPTY, "Found empty markdown block.",
                            md.start(), snippet=md.group(0))
                continue
            block_index = md.start(1) + raw_block.find(block)

            closed: list[tuple[int, int]] = []
            for sub in _SUBLINE_RE.finditer(block):
                closed.append((sub.start(), sub.end()))
                index = block_index + sub.start(1)
                self._accept(self._parse_subline(sub.group(1), index, "markdown"),
                             index, "markdown")
            if not closed and not _SUBLINE_OPEN_RE.search(block):
                self._issue(IssueType.AMBIGUOUS_STRUCTURE,
                            "Markdown block found but contained no <subline> tags.",
                            block_index, snippet=block)
            self._report_unclosed(block, block_index, closed)

        closed = list(processed)
        for sub in _SUBLINE_RE.finditer(self.content):
            if any(start <= sub.start() < end for start, end in processed):
                continue
            closed.append((sub.start(), sub.end()))
            index = sub.start(1)
            self._accept(self._parse_subline(sub.group(1), index, "direct_tag"),
                         index, "direct_tag")
        self._report_unclosed(self.content, 0, closed)

        self.entries.sort(key=_id_sort_key)
        logger.debug("[Chunk %d] Parsed %d entries, %d issues",
                     self.chunk_part, len(self.entries), len(self.issues))
        return ParseResult(entries=self.entries, issues=self.issues)


def _time_to_seconds(value: str) -> float:
    parts = value.replace(',', '.').split(':')
    if len(parts) != 3:
        raise ValueError(f"expected HH:MM:SS,mmm, got {value!r}")
    hours, minutes, seconds = int(parts[0]), int(parts[1]), float(parts[2])
    if hours < 0 or not 0 <= minutes <= 59 or not 0 <= seconds < 60:
        raise ValueError(f"out of range components in {value!r}")
    return hours * 3600 + minutes * 60 + seconds


def _id_sort_key(entry: SubtitleEntry):
    match = _LEADING_INT_RE.match(entry.original_id)
    if match:
        return (0, int(match.group(1)))
    return (1, 0)


def parse_translation_response(content: str, chunk_part: int,
                               target_languages: list[str],
                               attempt: int = 1) -> ParseResult:
    """Parse one raw LLM response for a chunk."""
    return _ResponseParser(content or "", chunk_part, target_languages, attempt).parse()
