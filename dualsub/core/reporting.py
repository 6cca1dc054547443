"""
Run reporting.

Chunk workers never touch shared report state. They emit immutable
ChunkEvent records onto an asyncio.Queue; a single RunReporter task
consumes them and owns the issue list, outcome sets, token totals and the
progress bar.
"""

import asyncio
import logging
from dataclasses import dataclass, field

from tqdm import tqdm

from dualsub.core.constants import ChunkStatus
from dualsub.core.costs import calculate_cost
from dualsub.core.models import ProcessingIssue

logger = logging.getLogger(__name__)


class EventKind:
    STATUS = "status"
    ISSUE = "issue"
    TOKENS = "tokens"
    FINISHED = "finished"


@dataclass(frozen=True)
class ChunkEvent:
    kind: str
    part: int
    status: str | None = None
    issue: ProcessingIssue | None = None
    attempt: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass
class RunReport:
    model: str = ""
    selected: list[int] = field(default_factory=list)
    succeeded: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    issues: list[ProcessingIssue] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    run_id: int | None = None

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.is_error)

    @property
    def warning_count(self) -> int:
        return len(self.issues) - self.error_count


class RunReporter:
    """Single consumer of chunk events for one run."""

    def __init__(self, model: str, selected: list[int], skipped: list[int] | None = None,
                 show_progress: bool = True):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.report = RunReport(model=model, selected=sorted(selected),
                                skipped=sorted(skipped or []))
        self._show_progress = show_progress
        self._statuses: dict[int, str] = {}
        self._task: asyncio.Task | None = None
        self._bar: tqdm | None = None

    def emit(self, event: ChunkEvent):
        self.queue.put_nowait(event)

    def start(self):
        self._bar = tqdm(
            total=len(self.report.selected),
            desc="Translating",
            unit="chunk",
            disable=not self._show_progress,
        )
        self._task = asyncio.create_task(self._consume())

    async def close(self) -> RunReport:
        """Drain the queue, stop the consumer and return the final report."""
        self.queue.put_nowait(None)
        if self._task is not None:
            await self._task
        if self._bar is not None:
            self._bar.close()
        self.report.succeeded.sort()
        self.report.failed.sort()
        return self.report

    async def _consume(self):
        while True:
            event = await self.queue.get()
            if event is None:
                break
            self._apply(event)

    def _apply(self, event: ChunkEvent):
        report = self.report
        if event.kind == EventKind.STATUS:
            self._statuses[event.part] = event.status
            self._refresh_postfix()
        elif event.kind == EventKind.ISSUE:
            report.issues.append(event.issue)
        elif event.kind == EventKind.TOKENS:
            report.input_tokens += event.input_tokens or 0
            report.output_tokens += event.output_tokens or 0
            if event.input_tokens is not None and event.output_tokens is not None:
                report.estimated_cost += calculate_cost(
                    report.model, event.input_tokens, event.output_tokens)
        elif event.kind == EventKind.FINISHED:
            self._statuses.pop(event.part, None)
            if event.status == ChunkStatus.COMPLETED:
                report.succeeded.append(event.part)
            else:
                report.failed.append(event.part)
            if self._bar is not None:
                self._bar.update(1)
                self._refresh_postfix()
        else:
            logger.warning("Unknown chunk event kind %r ignored", event.kind)

    def _refresh_postfix(self):
        if self._bar is None or self._bar.disable:
            return
        active = ",".join(f"{p}:{s}" for p, s in sorted(self._statuses.items()))
        self._bar.set_postfix_str(
            f"ok={len(self.report.succeeded)} failed={len(self.report.failed)} {active}",
            refresh=True,
        )
