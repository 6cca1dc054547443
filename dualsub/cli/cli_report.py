"""
Plain-text rendering of run reports.
"""

from typing import TextIO

from dualsub.core.constants import Severity
from dualsub.core.models import Chunk, ProcessingIssue
from dualsub.core.reporting import RunReport

_RULE = "─" * 60

_SEVERITY_LABELS = {
    Severity.ERROR: "ERROR",
    Severity.WARNING: "WARN ",
    Severity.INFO: "INFO ",
}


def format_issue(issue: ProcessingIssue) -> str:
    where = f"part {issue.chunk_part}" if issue.chunk_part is not None else "run"
    if issue.subtitle_id:
        where += f" id {issue.subtitle_id}"
    if issue.line_number:
        where += f" line {issue.line_number}"
    label = _SEVERITY_LABELS.get(issue.severity, issue.severity.upper())
    return f"[{label}] {issue.type} ({where}): {issue.message}"


def render_report(report: RunReport, out: TextIO, chunks: list[Chunk] | None = None,
                  verbose: bool = False):
    """
    Write a summary of one run.
    Warnings are listed only when ``verbose``; errors always are.
    """
    out.write(f"{_RULE}\n")
    out.write(f"Run {report.run_id if report.run_id is not None else '-'}"
              f"  model: {report.model}\n")
    out.write(f"Succeeded: {len(report.succeeded)}  Failed: {len(report.failed)}  "
              f"Skipped (already completed): {len(report.skipped)}\n")
    if report.failed:
        out.write(f"Failed parts: {', '.join(str(p) for p in report.failed)}\n")
    out.write(f"Tokens: {report.input_tokens} in / {report.output_tokens} out  "
              f"Estimated cost: ${report.estimated_cost:.4f}\n")

    if chunks:
        out.write(f"{_RULE}\n")
        for chunk in sorted(chunks, key=lambda c: c.part_number):
            line = f"  part {chunk.part_number:>3}  {chunk.status:<11}"
            if chunk.attempts:
                line += f"  attempts={chunk.attempts}"
            if chunk.error:
                line += f"  {chunk.error_type}: {chunk.error[:120]}"
            out.write(line + "\n")

    shown = [i for i in report.issues if verbose or i.severity == Severity.ERROR]
    out.write(f"{_RULE}\n")
    out.write(f"Issues: {report.error_count} error(s), {report.warning_count} warning(s)")
    if not verbose and report.warning_count:
        out.write(" (use --verbose to list warnings)")
    out.write("\n")
    for issue in shown:
        out.write(f"  {format_issue(issue)}\n")
    out.write(f"{_RULE}\n")
