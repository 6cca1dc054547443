#!/usr/bin/env python3
"""
Tests for the chunk orchestrator: retry accounting, validation retries,
last-chunk fallback, resumability and the concurrency bound.
A scripted in-process backend stands in for the LLM.
"""

import asyncio
import re
import sys
import tempfile
import threading
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from dualsub.core.artifacts import ArtifactStore
from dualsub.core.backends import LLMBackend
from dualsub.core.config import default_config
from dualsub.core.constants import ChunkStatus, IssueType, Severity
from dualsub.core.db_sqlite import Database
from dualsub.core.error_codes import ArtifactWriteError
from dualsub.core.models import BackendResult, Chunk, ProcessingIssue
from dualsub.core.orchestrator import ChunkOrchestrator
from dualsub.core.reporting import ChunkEvent, EventKind, RunReporter
from dualsub.core.srt_parse import format_srt_timing

CUES_PER_PART = 3
_PART_RE = re.compile(r'PART=(\d+)')


def reference_cues(part: int) -> list[tuple[int, float, float]]:
    base = (part - 1) * CUES_PER_PART
    cues = []
    for i in range(1, CUES_PER_PART + 1):
        start = part * 100 + i * 2
        cues.append((base + i, start, start + 1.5))
    return cues


def response_for(part: int, count: int = CUES_PER_PART) -> str:
    """LLM-style answer covering the first ``count`` reference cues of a part."""
    blocks = ["Here are the translations:\n"]
    for cue_id, start, end in reference_cues(part)[:count]:
        blocks.append(
            "<subline>\n"
            f"<original_number>{cue_id}</original_number>\n"
            f"<original_line>line {cue_id}</original_line>\n"
            f"<original_timing>{format_srt_timing(start, end)}</original_timing>\n"
            f"<better_english_translation>English {cue_id}</better_english_translation>\n"
            f"<korean_translation>한국어 {cue_id}</korean_translation>\n"
            "</subline>\n"
        )
    return "".join(blocks)


class ScriptedBackend(LLMBackend):
    """
    Answers from a per-part script; each item is a response string, None
    (no usable response) or an exception to raise. Parts without a script,
    or whose script ran out, get ``default(part)``.
    """

    name = "scripted"

    def __init__(self, script: dict | None = None, default=response_for, delay: float = 0.0):
        super().__init__(api_key="test-key")
        self.script = {part: list(items) for part, items in (script or {}).items()}
        self.default = default
        self.delay = delay
        self.calls: list[int] = []
        self.active = 0
        self.max_active = 0

    async def invoke(self, prompt, model):
        part = int(_PART_RE.search(prompt).group(1))
        self.calls.append(part)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

        items = self.script.get(part)
        answer = items.pop(0) if items else (self.default(part) if self.default else None)
        if isinstance(answer, Exception):
            raise answer
        if answer is None:
            return None
        return BackendResult(text=answer, input_tokens=1000, output_tokens=500)

    def calls_for(self, part: int) -> int:
        return self.calls.count(part)


def always_none(part):
    return None


class OrchestratorTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        self.work = self.root / "work"
        self.db = Database(self.work / "state.db")
        self.sleeps: list[float] = []

    def tearDown(self):
        self.db.close()
        self.tmpdir.cleanup()

    async def no_sleep(self, delay):
        self.sleeps.append(delay)

    def make_chunks(self, parts, with_reference=True) -> list[Chunk]:
        chunks = []
        for part in parts:
            transcript = self.root / f"part{part}_transcript.txt"
            transcript.write_text(f"PART={part}\n[00:0{part}] source speech", encoding="utf-8")
            reference = self.root / f"part{part}.srt"
            if with_reference:
                reference.write_text("\n".join(
                    f"{cue_id}\n{format_srt_timing(start, end)}\nline {cue_id}\n"
                    for cue_id, start, end in reference_cues(part)
                ), encoding="utf-8")
            chunks.append(Chunk(
                part_number=part,
                source_transcript_path=str(transcript),
                reference_srt_path=str(reference),
                start_sec=(part - 1) * 600.0,
                end_sec=part * 600.0,
            ))
        self.db.upsert_chunks(chunks)
        return chunks

    def config(self, **overrides) -> dict:
        config = default_config()
        config.update(intermediate_dir=str(self.work), model="claude-sonnet-4-5",
                      target_languages=["Korean"])
        config.update(overrides)
        return config

    def orchestrator(self, backend, **overrides) -> ChunkOrchestrator:
        return ChunkOrchestrator(self.db, backend, self.config(**overrides),
                                 sleep=self.no_sleep, show_progress=False)

    def issues_for(self, report, part):
        return [i for i in report.issues if i.chunk_part == part]


class TestHappyPath(OrchestratorTestCase):

    async def test_all_chunks_complete_first_attempt(self):
        self.make_chunks([1, 2, 3])
        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()

        self.assertEqual(report.succeeded, [1, 2, 3])
        self.assertEqual(report.failed, [])
        self.assertEqual(report.exit_code, 0)
        self.assertEqual(report.issues, [])
        self.assertEqual(sorted(backend.calls), [1, 2, 3])
        self.assertEqual(report.input_tokens, 3000)
        self.assertAlmostEqual(report.estimated_cost, 3 * (0.003 + 0.0075))

        for chunk in self.db.get_chunks():
            self.assertEqual(chunk.status, ChunkStatus.COMPLETED)
            self.assertEqual(chunk.attempts, 1)
            self.assertTrue(Path(chunk.parsed_data_path).is_file())
            self.assertTrue(chunk.parsed_data_path.endswith(
                f"part{chunk.part_number:02d}_attempt1_parsed.json"))
            entries = ArtifactStore.read_parsed(Path(chunk.parsed_data_path))
            self.assertEqual(len(entries), CUES_PER_PART)
            self.assertEqual(entries[0].translations["Korean"],
                             f"한국어 {reference_cues(chunk.part_number)[0][0]}")
            self.assertEqual(chunk.token_counts,
                             [{'attempt': 1, 'input_tokens': 1000, 'output_tokens': 500}])
            self.assertTrue(Path(chunk.prompt_path).is_file())

    async def test_run_is_recorded(self):
        self.make_chunks([1, 2])
        report = await self.orchestrator(ScriptedBackend()).run()
        run = self.db.get_last_run()
        self.assertEqual(run['id'], report.run_id)
        self.assertEqual(run['backend'], "scripted")
        self.assertEqual(run['succeeded'], 2)
        self.assertEqual(run['exit_code'], 0)

    async def test_no_reference_still_completes(self):
        self.make_chunks([1], with_reference=False)
        report = await self.orchestrator(ScriptedBackend()).run()
        self.assertEqual(report.succeeded, [1])
        self.assertTrue(all(i.severity == Severity.WARNING for i in report.issues))
        self.assertTrue(any("Reference SRT not available" in i.message for i in report.issues))


class TestApiRetries(OrchestratorTestCase):

    async def test_exhausted_api_retries(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [None] * 10})
        report = await self.orchestrator(backend, api_retries=3).run()

        self.assertEqual(backend.calls_for(1), 4)
        self.assertEqual(self.sleeps, [2, 4, 8])
        self.assertEqual(report.failed, [1])
        self.assertEqual(report.succeeded, [2])
        self.assertEqual(report.exit_code, 1)

        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.status, ChunkStatus.FAILED)
        self.assertEqual(chunk.error_type, IssueType.TRANSLATION)
        self.assertIsNone(chunk.parsed_data_path)
        self.assertEqual(chunk.attempts, 1)
        self.assertFalse((self.work / "llm_responses" / "part01_attempt1_response.txt").exists())

        errors = [i for i in self.issues_for(report, 1) if i.is_error]
        self.assertEqual(len(errors), 1)
        self.assertEqual(errors[0].type, IssueType.TRANSLATION)
        self.assertEqual(len(self.issues_for(report, 1)), 1)

    async def test_backoff_is_capped(self):
        self.make_chunks([1])
        backend = ScriptedBackend(default=always_none)
        await self.orchestrator(backend, api_retries=8, max_backoff_sec=60).run()
        self.assertEqual(self.sleeps, [2, 4, 8, 16, 32, 60, 60, 60])

    async def test_empty_responses_then_success(self):
        self.make_chunks([1])
        backend = ScriptedBackend(script={1: ["", "   ", response_for(1)]})
        with self.assertLogs('dualsub.core.orchestrator', level='WARNING') as logs:
            report = await self.orchestrator(backend, api_retries=3).run()

        retry_warnings = [r for r in logs.records if "gave no text" in r.getMessage()]
        self.assertEqual(len(retry_warnings), 2)
        self.assertEqual(backend.calls_for(1), 3)
        self.assertEqual(report.succeeded, [1])
        self.assertEqual(report.issues, [])
        self.assertEqual(self.db.get_chunk(1).attempts, 1)

    async def test_unexpected_exception_is_chunk_scoped(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [RuntimeError("socket exploded")]})
        with self.assertLogs('dualsub.core.orchestrator', level='ERROR'):
            report = await self.orchestrator(backend).run()
        self.assertEqual(report.failed, [1])
        self.assertEqual(report.succeeded, [2])
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.error_type, IssueType.TRANSLATION)
        self.assertIn("socket exploded", chunk.error)


class TestValidationRetries(OrchestratorTestCase):

    async def test_exact_cycle_count(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [response_for(1, 1)] * 3})
        report = await self.orchestrator(backend, validation_retries=2).run()

        self.assertEqual(backend.calls_for(1), 3)
        self.assertEqual(report.failed, [1])
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.status, ChunkStatus.FAILED)
        self.assertEqual(chunk.error_type, IssueType.VALIDATION)
        self.assertEqual(chunk.attempts, 3)
        self.assertIn("attempt 1:", chunk.error)
        self.assertIn("attempt 3:", chunk.error)
        self.assertEqual([t['attempt'] for t in chunk.token_counts], [1, 2, 3])
        for attempt in (1, 2, 3):
            self.assertTrue(
                (self.work / "llm_responses" / f"part01_attempt{attempt}_response.txt").is_file())
        self.assertFalse((self.work / "llm_responses" / "part01_attempt4_response.txt").exists())

        errors = [i for i in self.issues_for(report, 1) if i.is_error]
        self.assertEqual(len(errors), 1)

    async def test_second_attempt_succeeds(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [response_for(1, 1), response_for(1)]})
        report = await self.orchestrator(backend, validation_retries=1).run()
        self.assertEqual(report.succeeded, [1, 2])
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.attempts, 2)
        self.assertTrue(chunk.parsed_data_path.endswith("part01_attempt2_parsed.json"))
        self.assertEqual(self.issues_for(report, 1), [])

    async def test_zero_validation_retries(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [response_for(1, 1)]})
        report = await self.orchestrator(backend, validation_retries=0).run()
        self.assertEqual(backend.calls_for(1), 1)
        self.assertEqual(report.failed, [1])


class TestLastChunk(OrchestratorTestCase):

    async def test_fallback_prefers_most_entries_then_earliest(self):
        self.make_chunks([1, 2])
        script = {2: [response_for(2, 1), response_for(2, 2), response_for(2, 2)]}
        backend = ScriptedBackend(script=script)
        report = await self.orchestrator(backend, validation_retries=2,
                                         relaxed_tail_checks=[]).run()

        self.assertEqual(backend.calls_for(2), 3)
        self.assertEqual(report.succeeded, [1, 2])
        chunk = self.db.get_chunk(2)
        self.assertEqual(chunk.status, ChunkStatus.COMPLETED)
        self.assertTrue(chunk.parsed_data_path.endswith("part02_attempt2_parsed.json"))
        self.assertEqual(len(ArtifactStore.read_parsed(Path(chunk.parsed_data_path))), 2)
        fallback = [i for i in self.issues_for(report, 2) if "fallback" in i.message]
        self.assertEqual(len(fallback), 1)
        self.assertEqual(fallback[0].severity, Severity.WARNING)
        self.assertFalse(any(i.is_error for i in report.issues))

    async def test_no_fallback_for_other_chunks(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={1: [response_for(1, 2)] * 2})
        report = await self.orchestrator(backend, validation_retries=1,
                                         relaxed_tail_checks=[]).run()
        self.assertEqual(report.failed, [1])

    async def test_no_fallback_without_entries(self):
        self.make_chunks([1])
        backend = ScriptedBackend(default=lambda part: "I cannot help with that.")
        report = await self.orchestrator(backend, validation_retries=1).run()
        self.assertEqual(report.failed, [1])
        self.assertEqual(self.db.get_chunk(1).error_type, IssueType.VALIDATION)

    async def test_relaxed_checks_on_final_attempt(self):
        self.make_chunks([1, 2])
        backend = ScriptedBackend(script={2: [response_for(2, 2), response_for(2, 2)]})
        report = await self.orchestrator(backend, validation_retries=1).run()

        self.assertEqual(report.succeeded, [1, 2])
        chunk = self.db.get_chunk(2)
        self.assertTrue(chunk.parsed_data_path.endswith("part02_attempt2_parsed.json"))
        relaxed = [i for i in self.issues_for(report, 2) if "relaxed" in i.message]
        self.assertTrue(relaxed)
        self.assertTrue(all(i.severity == Severity.WARNING for i in relaxed))

    async def test_last_part_follows_selection(self):
        self.make_chunks([1, 2, 3])
        backend = ScriptedBackend(script={1: [response_for(1, 2)]})
        report = await self.orchestrator(backend, validation_retries=0, only_part=1,
                                         relaxed_tail_checks=[]).run()
        self.assertEqual(report.selected, [1])
        self.assertEqual(report.succeeded, [1])
        self.assertEqual(backend.calls, [1])


class TestChunkFailures(OrchestratorTestCase):

    async def test_missing_transcript(self):
        chunks = self.make_chunks([1, 2])
        Path(chunks[0].source_transcript_path).unlink()
        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()

        self.assertEqual(backend.calls_for(1), 0)
        self.assertEqual(report.failed, [1])
        self.assertEqual(report.succeeded, [2])
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.error_type, IssueType.PROMPT_GEN)
        self.assertEqual([i.type for i in self.issues_for(report, 1)], [IssueType.PROMPT_GEN])

    async def test_undecodable_transcript(self):
        chunks = self.make_chunks([1])
        Path(chunks[0].source_transcript_path).write_bytes("PART=1 caf\xe9".encode("latin-1"))
        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()

        self.assertEqual(backend.calls, [])
        self.assertEqual(report.failed, [1])
        self.assertEqual(self.db.get_chunk(1).error_type, IssueType.PROMPT_GEN)
        self.assertEqual([i.type for i in self.issues_for(report, 1)], [IssueType.PROMPT_GEN])

    async def test_undecodable_reference_still_completes(self):
        chunks = self.make_chunks([1])
        reference = Path(chunks[0].reference_srt_path)
        reference.write_bytes(
            reference.read_text(encoding="utf-8").replace("line", "caf\xe9").encode("latin-1"))
        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()

        self.assertEqual(backend.calls, [1])
        self.assertEqual(report.succeeded, [1])
        self.assertEqual(self.db.get_chunk(1).status, ChunkStatus.COMPLETED)

    async def test_bad_prompt_template(self):
        self.make_chunks([1])
        backend = ScriptedBackend()
        report = await self.orchestrator(
            backend, prompt_template_path=str(self.root / "missing.template")).run()
        self.assertEqual(backend.calls, [])
        self.assertEqual(self.db.get_chunk(1).error_type, IssueType.PROMPT_GEN)
        self.assertEqual(report.exit_code, 1)

    async def test_parsed_write_failure(self):
        self.make_chunks([1])
        orchestrator = self.orchestrator(ScriptedBackend())
        with mock.patch.object(orchestrator.artifacts, 'write_parsed',
                               side_effect=ArtifactWriteError("disk full")):
            report = await orchestrator.run()
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.status, ChunkStatus.FAILED)
        self.assertEqual(chunk.error_type, IssueType.FORMAT)
        self.assertIsNone(chunk.parsed_data_path)
        self.assertEqual(report.failed, [1])

    async def test_long_error_is_truncated(self):
        self.make_chunks([1])
        backend = ScriptedBackend(script={1: [RuntimeError("x" * 5000)]})
        with self.assertLogs('dualsub.core.orchestrator', level='ERROR'):
            await self.orchestrator(backend).run()
        self.assertEqual(len(self.db.get_chunk(1).error), 2000)


class TestResume(OrchestratorTestCase):

    def _snapshot(self):
        return {
            path: (path.read_bytes(), path.stat().st_mtime_ns)
            for path in self.work.rglob("*")
            if path.is_file() and path.suffix in (".txt", ".json")
        }

    async def test_rerun_is_idempotent(self):
        self.make_chunks([1, 2, 3])
        await self.orchestrator(ScriptedBackend()).run()
        before = self._snapshot()

        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()
        self.assertEqual(backend.calls, [])
        self.assertEqual(report.skipped, [1, 2, 3])
        self.assertEqual(report.selected, [])
        self.assertEqual(report.exit_code, 0)
        self.assertEqual(self._snapshot(), before)

    async def test_force_reprocesses(self):
        self.make_chunks([1, 2])
        await self.orchestrator(ScriptedBackend()).run()
        backend = ScriptedBackend()
        report = await self.orchestrator(backend, force=True).run()
        self.assertEqual(sorted(backend.calls), [1, 2])
        self.assertEqual(report.skipped, [])

    async def test_missing_output_is_reprocessed(self):
        self.make_chunks([1, 2])
        await self.orchestrator(ScriptedBackend()).run()
        Path(self.db.get_chunk(2).parsed_data_path).unlink()

        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()
        self.assertEqual(backend.calls, [2])
        self.assertEqual(report.skipped, [1])
        self.assertTrue(Path(self.db.get_chunk(2).parsed_data_path).is_file())

    async def test_failed_chunk_retried_next_run(self):
        self.make_chunks([1, 2])
        await self.orchestrator(ScriptedBackend(script={1: [None] * 3}), api_retries=2).run()
        self.assertEqual(self.db.get_chunk(1).status, ChunkStatus.FAILED)

        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()
        self.assertEqual(backend.calls, [1])
        chunk = self.db.get_chunk(1)
        self.assertEqual(chunk.status, ChunkStatus.COMPLETED)
        self.assertIsNone(chunk.error)
        self.assertIsNone(chunk.error_type)
        self.assertEqual(report.succeeded, [1])

    async def test_only_part(self):
        self.make_chunks([1, 2, 3])
        backend = ScriptedBackend()
        report = await self.orchestrator(backend, only_part=2).run()
        self.assertEqual(backend.calls, [2])
        self.assertEqual(report.selected, [2])
        self.assertEqual(self.db.get_chunk(1).status, ChunkStatus.PENDING)

    async def test_chunks_passed_directly_are_stored(self):
        chunks = self.make_chunks([1])
        other = ChunkOrchestrator(Database(self.work / "other.db"), ScriptedBackend(),
                                  self.config(), sleep=self.no_sleep, show_progress=False)
        try:
            report = await other.run(chunks)
            self.assertEqual(report.succeeded, [1])
            self.assertEqual(other.db.get_chunk(1).status, ChunkStatus.COMPLETED)
        finally:
            other.db.close()


class TestConcurrency(OrchestratorTestCase):

    async def test_bound_is_respected(self):
        self.make_chunks([1, 2, 3, 4, 5])
        backend = ScriptedBackend(delay=0.02)
        report = await self.orchestrator(backend, max_concurrent=2).run()
        self.assertEqual(report.succeeded, [1, 2, 3, 4, 5])
        self.assertEqual(backend.max_active, 2)

    async def test_single_slot_is_sequential(self):
        self.make_chunks([1, 2, 3])
        backend = ScriptedBackend(delay=0.01)
        await self.orchestrator(backend, max_concurrent=1).run()
        self.assertEqual(backend.max_active, 1)
        self.assertEqual(backend.calls, [1, 2, 3])

    async def test_empty_selection(self):
        backend = ScriptedBackend()
        report = await self.orchestrator(backend).run()
        self.assertEqual(report.selected, [])
        self.assertEqual(report.exit_code, 0)
        self.assertIsNotNone(self.db.get_last_run())

    async def test_state_writes_leave_the_event_loop(self):
        self.make_chunks([1, 2])
        loop_thread = threading.get_ident()
        writer_threads = []
        update_chunk = self.db.update_chunk

        def recording_update(part, **fields):
            writer_threads.append(threading.get_ident())
            update_chunk(part, **fields)

        with mock.patch.object(self.db, 'update_chunk', side_effect=recording_update):
            report = await self.orchestrator(ScriptedBackend(), max_concurrent=2).run()

        self.assertEqual(report.succeeded, [1, 2])
        self.assertTrue(writer_threads)
        self.assertNotIn(loop_thread, writer_threads)
        self.assertEqual(self.db.get_chunk(2).status, ChunkStatus.COMPLETED)


class TestRunReporter(unittest.IsolatedAsyncioTestCase):

    async def test_events_are_folded_into_report(self):
        reporter = RunReporter("claude-sonnet-4-5", [2, 1], skipped=[3], show_progress=False)
        reporter.start()
        issue = ProcessingIssue(IssueType.VALIDATION, Severity.ERROR, "bad", 2)
        reporter.emit(ChunkEvent(EventKind.STATUS, 1, status=ChunkStatus.TRANSLATING))
        reporter.emit(ChunkEvent(EventKind.TOKENS, 1, attempt=1,
                                 input_tokens=1_000_000, output_tokens=0))
        reporter.emit(ChunkEvent(EventKind.TOKENS, 2, attempt=1,
                                 input_tokens=10, output_tokens=None))
        reporter.emit(ChunkEvent(EventKind.ISSUE, 2, issue=issue))
        reporter.emit(ChunkEvent(EventKind.FINISHED, 2, status=ChunkStatus.FAILED))
        reporter.emit(ChunkEvent(EventKind.FINISHED, 1, status=ChunkStatus.COMPLETED))
        report = await reporter.close()

        self.assertEqual(report.selected, [1, 2])
        self.assertEqual(report.skipped, [3])
        self.assertEqual(report.succeeded, [1])
        self.assertEqual(report.failed, [2])
        self.assertEqual(report.issues, [issue])
        self.assertEqual(report.input_tokens, 1_000_010)
        self.assertAlmostEqual(report.estimated_cost, 3.0)
        self.assertEqual(report.exit_code, 1)
        self.assertEqual(report.error_count, 1)


if __name__ == "__main__":
    unittest.main()
