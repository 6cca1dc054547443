"""
Chunk translation orchestrator.

Drives every selected chunk through prompt → backend (with API retry and
backoff) → parse → validate, re-invoking the backend on validation failure
up to ``validation_retries`` times. A fixed pool of worker coroutines pulls
chunks from one queue, so a slot is refilled as soon as a chunk finishes.
All failures are chunk-scoped and end as exactly one error issue.
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

from dualsub.core.constants import (
    ChunkStatus, IssueType, Severity,
    DEFAULT_MODEL, DEFAULT_TARGET_LANGUAGE, DEFAULT_API_RETRIES,
    DEFAULT_VALIDATION_RETRIES, DEFAULT_MAX_CONCURRENT, DEFAULT_MAX_BACKOFF_SEC,
    DEFAULT_INTERMEDIATE_DIR, BACKOFF_BASE, MAX_ERROR_MESSAGE_LEN,
)
from dualsub.core.artifacts import ArtifactStore
from dualsub.core.backends import LLMBackend
from dualsub.core.db_sqlite import Database
from dualsub.core.error_codes import ChunkError
from dualsub.core.models import Attempt, BackendResult, Chunk, ProcessingIssue, ReferenceEntry
from dualsub.core.prompt_builder import load_prompt_template, build_translation_prompt
from dualsub.core.reporting import ChunkEvent, EventKind, RunReport, RunReporter
from dualsub.core.response_parser import parse_translation_response
from dualsub.core.srt_parse import parse_srt_file
from dualsub.core.validator import validate_translations

logger = logging.getLogger(__name__)


class ChunkOrchestrator:
    """
    Runs the per-chunk state machine for a set of chunks.

    ``sleep`` is awaited for every backoff delay; tests pass a no-op.
    """

    def __init__(self, db: Database, backend: LLMBackend, config: dict | None = None,
                 artifacts: ArtifactStore | None = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None,
                 show_progress: bool = True):
        self.db = db
        self.backend = backend
        self.config = config or {}
        self.artifacts = artifacts or ArtifactStore(self.intermediate_dir)
        self._sleep = sleep or asyncio.sleep
        self.show_progress = show_progress

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def model(self) -> str:
        return self.config.get('model') or DEFAULT_MODEL

    @property
    def target_languages(self) -> list[str]:
        return list(self.config.get('target_languages') or [DEFAULT_TARGET_LANGUAGE])

    @property
    def api_retries(self) -> int:
        return int(self.config.get('api_retries', DEFAULT_API_RETRIES))

    @property
    def validation_retries(self) -> int:
        return int(self.config.get('validation_retries', DEFAULT_VALIDATION_RETRIES))

    @property
    def max_concurrent(self) -> int:
        return max(1, int(self.config.get('max_concurrent', DEFAULT_MAX_CONCURRENT)))

    @property
    def max_backoff_sec(self) -> float:
        return float(self.config.get('max_backoff_sec', DEFAULT_MAX_BACKOFF_SEC))

    @property
    def force(self) -> bool:
        return bool(self.config.get('force', False))

    @property
    def only_part(self) -> int | None:
        return self.config.get('only_part')

    @property
    def prompt_template_path(self) -> str | None:
        return self.config.get('prompt_template_path')

    @property
    def intermediate_dir(self) -> Path:
        return Path(self.config.get('intermediate_dir') or DEFAULT_INTERMEDIATE_DIR)

    # ── Selection ─────────────────────────────────────────────────────

    def select_chunks(self, chunks: list[Chunk]) -> tuple[list[Chunk], list[Chunk]]:
        """
        Split chunks into (selected, skipped).

        Completed chunks whose parsed output is still on disk are skipped
        unless ``force`` is set; the ``only_part`` filter drops everything else
        from both lists.
        """
        selected, skipped = [], []
        for chunk in sorted(chunks, key=lambda c: c.part_number):
            if self.only_part is not None and chunk.part_number != self.only_part:
                continue
            if chunk.status == ChunkStatus.COMPLETED and not self.force:
                if self.artifacts.parsed_output_exists(chunk):
                    skipped.append(chunk)
                    continue
                logger.warning("[Chunk %d] Marked completed but parsed output is missing, reprocessing",
                               chunk.part_number)
            selected.append(chunk)
        return selected, skipped

    def _backoff(self, retry: int) -> float:
        return min(BACKOFF_BASE ** retry, self.max_backoff_sec)

    # ── Run ───────────────────────────────────────────────────────────

    async def run(self, chunks: list[Chunk] | None = None) -> RunReport:
        """Process every eligible chunk and return the run report."""
        if chunks is None:
            chunks = await asyncio.to_thread(self.db.get_chunks)
        else:
            await asyncio.to_thread(self.db.upsert_chunks, chunks)

        selected, skipped = self.select_chunks(chunks)
        for chunk in skipped:
            logger.info("[Chunk %d] Already completed, skipping", chunk.part_number)

        # Fixed once per run: late-finishing chunks never change it
        last_part = max((c.part_number for c in selected), default=None)

        run_id = await asyncio.to_thread(
            self.db.create_run, self.backend.name, self.model, len(selected))
        reporter = RunReporter(self.model,
                               [c.part_number for c in selected],
                               [c.part_number for c in skipped],
                               show_progress=self.show_progress)
        reporter.start()

        if selected:
            logger.info("Translating %d chunk(s) with %s/%s, up to %d at a time (last part %d)",
                        len(selected), self.backend.name, self.model,
                        self.max_concurrent, last_part)
            queue: asyncio.Queue = asyncio.Queue()
            for chunk in selected:
                queue.put_nowait(chunk)
            workers = [
                asyncio.create_task(self._worker(queue, reporter, last_part))
                for _ in range(min(self.max_concurrent, len(selected)))
            ]
            await asyncio.gather(*workers)
        else:
            logger.info("No chunks need processing")

        report = await reporter.close()
        report.run_id = run_id
        await asyncio.to_thread(self.db.add_issues, run_id, report.issues)
        await asyncio.to_thread(
            self.db.finish_run,
            run_id,
            succeeded=len(report.succeeded),
            failed=len(report.failed),
            skipped=len(report.skipped),
            input_tokens=report.input_tokens,
            output_tokens=report.output_tokens,
            estimated_cost=report.estimated_cost,
            exit_code=report.exit_code,
        )
        logger.info("Run finished: %d succeeded, %d failed, %d skipped",
                    len(report.succeeded), len(report.failed), len(report.skipped))
        return report

    async def _worker(self, queue: asyncio.Queue, reporter: RunReporter, last_part: int):
        while True:
            try:
                chunk = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self.process_chunk(chunk, reporter, is_last_chunk=chunk.part_number == last_part)

    # ── Per-chunk state machine ───────────────────────────────────────

    async def process_chunk(self, chunk: Chunk, reporter: RunReporter,
                            is_last_chunk: bool = False) -> Chunk:
        """Run one chunk to a terminal state. Never raises for chunk-level failures."""
        try:
            await self._translate_chunk(chunk, reporter, is_last_chunk)
        except ChunkError as e:
            await self._fail(chunk, reporter, e.issue_type, e.message, e.context)
        except Exception as e:
            logger.error("[Chunk %d] Unexpected error: %s", chunk.part_number, e, exc_info=True)
            await self._fail(chunk, reporter, IssueType.TRANSLATION, f"Unexpected error: {e}")
        reporter.emit(ChunkEvent(EventKind.FINISHED, chunk.part_number, status=chunk.status))
        return chunk

    async def _translate_chunk(self, chunk: Chunk, reporter: RunReporter, is_last_chunk: bool):
        part = chunk.part_number
        await self._transition(chunk, reporter, ChunkStatus.PROMPTING,
                         error=None, error_type=None, parsed_data_path=None,
                         attempts=0, token_counts=[])

        prompt = await asyncio.to_thread(self._build_prompt, chunk)
        prompt_path = await asyncio.to_thread(self.artifacts.write_prompt, part, prompt, 1)
        await self._update(chunk, prompt_path=str(prompt_path))
        reference = await asyncio.to_thread(self._load_reference, chunk)

        max_attempts = self.validation_retries + 1
        failed_attempts: list[Attempt] = []

        for attempt in range(1, max_attempts + 1):
            is_final_attempt = attempt == max_attempts
            await self._transition(chunk, reporter, ChunkStatus.TRANSLATING, attempts=attempt)

            result = await self._invoke_with_retry(part, prompt, attempt)
            if result is None:
                raise ChunkError(IssueType.TRANSLATION,
                                 f"Backend gave no usable response after {self.api_retries + 1} "
                                 f"call(s) on attempt {attempt}")
            await self._record_tokens(chunk, reporter, attempt, result)

            response_path = await asyncio.to_thread(
                self.artifacts.write_response, part, attempt, result.text)
            await self._transition(chunk, reporter, ChunkStatus.PARSING, response_path=str(response_path))
            parsed = parse_translation_response(result.text, part, self.target_languages, attempt)

            await self._transition(chunk, reporter, ChunkStatus.VALIDATING)
            validation = validate_translations(
                part, parsed.entries, parsed.issues, reference, self.config,
                is_last_chunk=is_last_chunk, is_final_attempt=is_final_attempt,
            )

            if validation.is_valid:
                parsed_path = await asyncio.to_thread(
                    self.artifacts.write_parsed, part, attempt, parsed.entries)
                self._emit_issues(reporter, parsed.issues + validation.validation_issues)
                await self._transition(chunk, reporter, ChunkStatus.COMPLETED,
                                 parsed_data_path=str(parsed_path))
                logger.info("[Chunk %d] Completed on attempt %d with %d entries",
                            part, attempt, len(parsed.entries))
                return

            failed_attempts.append(Attempt(
                attempt_number=attempt,
                raw_text=result.text,
                parsing_issues=parsed.issues,
                validation_issues=validation.validation_issues,
                entry_count=len(parsed.entries),
            ))
            if not is_final_attempt:
                logger.warning("[Chunk %d] Attempt %d/%d failed validation, re-invoking backend",
                               part, attempt, max_attempts)

        if is_last_chunk and any(a.entry_count > 0 for a in failed_attempts):
            await self._complete_with_fallback(chunk, reporter, failed_attempts)
            return

        summary = "; ".join(
            f"attempt {a.attempt_number}: {' | '.join(a.error_messages) or 'no error detail'}"
            for a in failed_attempts
        )
        raise ChunkError(IssueType.VALIDATION,
                         f"Validation failed after {len(failed_attempts)} attempt(s): {summary}")

    async def _complete_with_fallback(self, chunk: Chunk, reporter: RunReporter,
                                      failed_attempts: list[Attempt]):
        """Keep the failed attempt with the most entries; earliest wins ties."""
        part = chunk.part_number
        best_attempt, best = None, None
        for attempt in failed_attempts:
            reparsed = parse_translation_response(
                attempt.raw_text, part, self.target_languages, attempt.attempt_number)
            if best is None or len(reparsed.entries) > len(best.entries):
                best_attempt, best = attempt, reparsed

        if not best.entries:
            raise ChunkError(IssueType.VALIDATION,
                             "Validation retries exhausted and no attempt produced entries")

        parsed_path = await asyncio.to_thread(
            self.artifacts.write_parsed, part, best_attempt.attempt_number, best.entries)
        self._emit_issues(reporter, best.issues)
        self._emit_issues(reporter, [ProcessingIssue(
            type=IssueType.VALIDATION,
            severity=Severity.WARNING,
            message=(f"Validation retries exhausted on the last chunk; using attempt "
                     f"{best_attempt.attempt_number} ({len(best.entries)} entries) as fallback"),
            chunk_part=part,
        )])
        await self._transition(chunk, reporter, ChunkStatus.COMPLETED, parsed_data_path=str(parsed_path))
        logger.warning("[Chunk %d] Completed with fallback attempt %d (%d entries)",
                       part, best_attempt.attempt_number, len(best.entries))

    async def _invoke_with_retry(self, part: int, prompt: str, attempt: int) -> BackendResult | None:
        calls = self.api_retries + 1
        for call in range(1, calls + 1):
            result = await self.backend.invoke(prompt, self.model)
            if result is not None and result.text and result.text.strip():
                return result
            if call < calls:
                delay = self._backoff(call)
                logger.warning("[Chunk %d] Attempt %d: backend call %d/%d gave no text, retrying in %ss",
                               part, attempt, call, calls, delay)
                await self._sleep(delay)
            else:
                logger.warning("[Chunk %d] Attempt %d: backend call %d/%d gave no text, giving up",
                               part, attempt, call, calls)
        return None

    # ── Helpers ───────────────────────────────────────────────────────

    def _build_prompt(self, chunk: Chunk) -> str:
        template = load_prompt_template(self.prompt_template_path)
        return build_translation_prompt(chunk, template, self.target_languages)

    def _load_reference(self, chunk: Chunk) -> list[ReferenceEntry] | None:
        if not chunk.reference_srt_path:
            return None
        try:
            return parse_srt_file(Path(chunk.reference_srt_path))
        except OSError as e:
            logger.warning("[Chunk %d] Reference SRT unreadable for validation: %s",
                           chunk.part_number, e)
            return None

    async def _update(self, chunk: Chunk, **fields):
        for key, value in fields.items():
            setattr(chunk, key, value)
        await asyncio.to_thread(self.db.update_chunk, chunk.part_number, **fields)

    async def _transition(self, chunk: Chunk, reporter: RunReporter, status: str, **fields):
        await self._update(chunk, status=status, **fields)
        reporter.emit(ChunkEvent(EventKind.STATUS, chunk.part_number, status=status))

    async def _record_tokens(self, chunk: Chunk, reporter: RunReporter, attempt: int,
                             result: BackendResult):
        chunk.token_counts.append({
            'attempt': attempt,
            'input_tokens': result.input_tokens,
            'output_tokens': result.output_tokens,
        })
        await self._update(chunk, token_counts=chunk.token_counts)
        reporter.emit(ChunkEvent(EventKind.TOKENS, chunk.part_number, attempt=attempt,
                                 input_tokens=result.input_tokens,
                                 output_tokens=result.output_tokens))

    @staticmethod
    def _emit_issues(reporter: RunReporter, issues: list[ProcessingIssue]):
        for issue in issues:
            reporter.emit(ChunkEvent(EventKind.ISSUE, issue.chunk_part, issue=issue))

    async def _fail(self, chunk: Chunk, reporter: RunReporter, issue_type: str, message: str,
                    context: str | None = None):
        message = message[:MAX_ERROR_MESSAGE_LEN]
        logger.error("[Chunk %d] %s: %s", chunk.part_number, issue_type, message)
        await self._transition(chunk, reporter, ChunkStatus.FAILED,
                               error=message, error_type=issue_type, parsed_data_path=None)
        reporter.emit(ChunkEvent(EventKind.ISSUE, chunk.part_number, issue=ProcessingIssue(
            type=issue_type,
            severity=Severity.ERROR,
            message=message,
            chunk_part=chunk.part_number,
            context=context,
        )))


async def run_translation(db: Database, backend: LLMBackend, config: dict,
                          show_progress: bool = True) -> RunReport:
    """Convenience entry point used by the CLI."""
    orchestrator = ChunkOrchestrator(db, backend, config, show_progress=show_progress)
    return await orchestrator.run()
