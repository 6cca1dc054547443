"""
Semantic validation of parsed subtitle entries.

Checks run against the chunk's reference SRT where one is available:
  parse_errors  share of <subline> blocks that could not be read at all
  coverage      parsed count and reference id coverage
  empty_text    entries with no text in any language
  timing        agreement with reference timings, plus ordering/overlap

A chunk is valid iff no error-severity issue was produced. On the last
chunk's final attempt the checks listed in ``relaxed_tail_checks`` report
warnings instead of errors; a response with no entries at all always fails.
"""

import logging
from dataclasses import dataclass, field

from dualsub.core.constants import (
    IssueType, Severity, PolicyCheck, UNPARSEABLE_ISSUE_TYPES,
    DEFAULT_RELAXED_TAIL_CHECKS,
    MAX_PARSE_ERROR_RATE, MIN_COUNT_MATCH_RATE, MIN_ID_COVERAGE_RATE,
    MAX_TIMING_MISMATCH_RATE, TIMING_MARGIN_SEC, OVERLAP_TOLERANCE_SEC,
    MAX_EMPTY_TEXT_RATE,
)
from dualsub.core.models import ProcessingIssue, ReferenceEntry, SubtitleEntry

logger = logging.getLogger(__name__)

_MAX_LISTED_IDS = 10
_MAX_LISTED_EXAMPLES = 5


@dataclass
class ValidationResult:
    is_valid: bool
    validation_issues: list[ProcessingIssue] = field(default_factory=list)

    @property
    def error_messages(self) -> list[str]:
        return [i.message for i in self.validation_issues if i.is_error]


class _Validation:

    def __init__(self, chunk_part: int, config: dict, relaxed: bool):
        self.chunk_part = chunk_part
        self.config = config
        self.relaxed_checks = set(config.get('relaxed_tail_checks',
                                             DEFAULT_RELAXED_TAIL_CHECKS)) if relaxed else set()
        self.issues: list[ProcessingIssue] = []

    def warn(self, message: str, subtitle_id: str | None = None):
        self.issues.append(ProcessingIssue(
            type=IssueType.VALIDATION, severity=Severity.WARNING,
            message=message, chunk_part=self.chunk_part, subtitle_id=subtitle_id,
        ))

    def fail(self, check: str, message: str, relaxable: bool = True):
        if relaxable and check in self.relaxed_checks:
            logger.warning("[Chunk %d] %s check failed but relaxed for the final tail attempt",
                           self.chunk_part, check)
            self.warn(f"{message} (relaxed for last chunk)")
            return
        self.issues.append(ProcessingIssue(
            type=IssueType.VALIDATION, severity=Severity.ERROR,
            message=message, chunk_part=self.chunk_part,
        ))

    def threshold(self, key: str, default: float) -> float:
        value = self.config.get(key)
        return default if value is None else float(value)


def _check_parse_errors(v: _Validation, parsing_issues, parsed_count, reference_count):
    unparseable = sum(1 for i in parsing_issues if i.type in UNPARSEABLE_ISSUE_TYPES)
    base = reference_count or parsed_count or 1
    rate = unparseable / base
    limit = v.threshold('max_parse_error_rate', MAX_PARSE_ERROR_RATE)
    if rate > limit:
        v.fail(PolicyCheck.PARSE_ERRORS,
               f"High parsing error rate: {unparseable}/{base} ({rate:.1%}) "
               f"exceeds threshold of {limit:.1%}.")


def _check_coverage(v: _Validation, entries: list[SubtitleEntry],
                    reference: list[ReferenceEntry] | None):
    parsed_count = len(entries)
    if parsed_count == 0:
        v.fail(PolicyCheck.COVERAGE, "No subtitle entries could be parsed from the response.",
               relaxable=False)
        return
    if not reference:
        return

    reference_count = len(reference)
    count_rate = parsed_count / reference_count
    min_count = v.threshold('min_count_match_rate', MIN_COUNT_MATCH_RATE)
    if count_rate < min_count:
        v.fail(PolicyCheck.COVERAGE,
               f"Low subtitle count match: parsed {parsed_count} entries, expected "
               f"~{reference_count} ({count_rate:.1%} found, required {min_count:.1%}).")

    parsed_ids = {e.original_id for e in entries}
    reference_ids = list(dict.fromkeys(str(r.id) for r in reference))
    missing = [rid for rid in reference_ids if rid not in parsed_ids]
    coverage = 1 - len(missing) / len(reference_ids)
    min_coverage = v.threshold('min_id_coverage_rate', MIN_ID_COVERAGE_RATE)
    if coverage < min_coverage:
        listed = ", ".join(missing[:_MAX_LISTED_IDS])
        more = "..." if len(missing) > _MAX_LISTED_IDS else ""
        v.fail(PolicyCheck.COVERAGE,
               f"Low id coverage: {len(parsed_ids)} unique ids cover {coverage:.1%} of "
               f"{len(reference_ids)} reference ids (required {min_coverage:.1%}). "
               f"Missing {len(missing)} ids (e.g. {listed}{more}).")


def _check_empty_text(v: _Validation, entries: list[SubtitleEntry]):
    if not entries:
        return
    empty = [e.original_id for e in entries if not e.has_text()]
    rate = len(empty) / len(entries)
    limit = v.threshold('max_empty_text_rate', MAX_EMPTY_TEXT_RATE)
    if rate > limit:
        listed = ", ".join(empty[:_MAX_LISTED_IDS])
        v.fail(PolicyCheck.EMPTY_TEXT,
               f"Too many entries without text: {len(empty)}/{len(entries)} ({rate:.1%}) "
               f"exceeds threshold of {limit:.1%} (e.g. {listed}).")


def _check_reference_timing(v: _Validation, entries, reference):
    margin = v.threshold('timing_margin_sec', TIMING_MARGIN_SEC)
    by_id = {str(r.id): r for r in reference}
    compared = 0
    mismatches: list[str] = []

    for entry in entries:
        if not entry.has_timing():
            continue
        ref = by_id.get(entry.original_id)
        if ref is None:
            continue
        compared += 1
        start_diff = abs(entry.start_sec - ref.start_sec)
        duration_diff = abs((entry.end_sec - entry.start_sec) - (ref.end_sec - ref.start_sec))
        if start_diff > margin or duration_diff > margin:
            detail = (f"id {entry.original_id}: start diff {start_diff:.2f}s, "
                      f"duration diff {duration_diff:.2f}s (margin {margin:.1f}s)")
            mismatches.append(detail)
            v.warn(f"Timing mismatch: {detail}", subtitle_id=entry.original_id)

    if compared == 0:
        if any(e.original_timing for e in entries):
            v.warn("Could not compare timing for any entry "
                   "(missing parsed times or no matching reference ids).")
        return

    rate = len(mismatches) / compared
    limit = v.threshold('max_timing_mismatch_rate', MAX_TIMING_MISMATCH_RATE)
    if rate > limit:
        examples = "; ".join(mismatches[:_MAX_LISTED_EXAMPLES])
        more = "..." if len(mismatches) > _MAX_LISTED_EXAMPLES else ""
        v.fail(PolicyCheck.TIMING,
               f"High timing mismatch rate: {len(mismatches)}/{compared} ({rate:.1%}) "
               f"entries exceed {margin:.1f}s. Examples: {examples}{more}")


def _check_ordering(v: _Validation, entries):
    """Timed entries, in id order, must start in order and not overlap."""
    tolerance = v.threshold('overlap_tolerance_sec', OVERLAP_TOLERANCE_SEC)
    timed = [e for e in entries if e.has_timing()]
    if len(timed) < 2:
        return

    violations: list[str] = []
    for prev, cur in zip(timed, timed[1:]):
        if cur.start_sec < prev.start_sec:
            violations.append(f"id {cur.original_id} starts before id {prev.original_id}")
        elif prev.end_sec - cur.start_sec > tolerance:
            violations.append(f"id {cur.original_id} overlaps id {prev.original_id} "
                              f"by {prev.end_sec - cur.start_sec:.2f}s")

    for detail in violations[:_MAX_LISTED_EXAMPLES]:
        v.warn(f"Timing order: {detail}")

    rate = len(violations) / (len(timed) - 1)
    limit = v.threshold('max_timing_mismatch_rate', MAX_TIMING_MISMATCH_RATE)
    if rate > limit:
        v.fail(PolicyCheck.TIMING,
               f"Timings out of order or overlapping: {len(violations)}/{len(timed) - 1} "
               f"transitions ({rate:.1%}) beyond {tolerance:.2f}s tolerance.")


def validate_translations(chunk_part: int,
                          entries: list[SubtitleEntry],
                          parsing_issues: list[ProcessingIssue],
                          reference_entries: list[ReferenceEntry] | None,
                          config: dict,
                          is_last_chunk: bool = False,
                          is_final_attempt: bool = False) -> ValidationResult:
    """Validate one attempt's parsed entries."""
    v = _Validation(chunk_part, config, relaxed=is_last_chunk and is_final_attempt)

    if not reference_entries:
        v.warn("Reference SRT not available; coverage and reference timing checks skipped.")
        reference_entries = None

    reference_count = len(reference_entries) if reference_entries else 0
    _check_parse_errors(v, parsing_issues, len(entries), reference_count)
    _check_coverage(v, entries, reference_entries)
    _check_empty_text(v, entries)

    if config.get('timing_check', True):
        if reference_entries:
            _check_reference_timing(v, entries, reference_entries)
        _check_ordering(v, entries)
    else:
        logger.debug("[Chunk %d] Timing checks disabled", chunk_part)

    result = ValidationResult(
        is_valid=not any(i.is_error for i in v.issues),
        validation_issues=v.issues,
    )
    if result.is_valid:
        logger.debug("[Chunk %d] Validation passed with %d warning(s)",
                     chunk_part, len(v.issues))
    else:
        logger.warning("[Chunk %d] Validation failed: %s",
                       chunk_part, "; ".join(result.error_messages))
    return result
