"""
Per-attempt artifact store: prompts, raw responses and parsed entries.
Paths derive only from (part number, attempt number).
"""

import json
import logging
from pathlib import Path

from dualsub.core.constants import PROMPTS_DIRNAME, RESPONSES_DIRNAME, PARSED_DIRNAME
from dualsub.core.error_codes import ArtifactWriteError
from dualsub.core.models import Chunk, SubtitleEntry

logger = logging.getLogger(__name__)


class ArtifactStore:
    """Reads and writes artifacts under one intermediate directory."""

    def __init__(self, intermediate_dir: Path):
        self.root = Path(intermediate_dir)
        self.prompts_dir = self.root / PROMPTS_DIRNAME
        self.responses_dir = self.root / RESPONSES_DIRNAME
        self.parsed_dir = self.root / PARSED_DIRNAME

    # ── Paths ─────────────────────────────────────────────────────────

    def prompt_path(self, part: int, attempt: int = 1) -> Path:
        return self.prompts_dir / f"part{part:02d}_attempt{attempt}_prompt.txt"

    def response_path(self, part: int, attempt: int) -> Path:
        return self.responses_dir / f"part{part:02d}_attempt{attempt}_response.txt"

    def parsed_path(self, part: int, attempt: int) -> Path:
        return self.parsed_dir / f"part{part:02d}_attempt{attempt}_parsed.json"

    # ── Writers ───────────────────────────────────────────────────────

    def _write_text(self, path: Path, text: str) -> Path:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding='utf-8')
        except OSError as e:
            raise ArtifactWriteError(f"Failed to write {path}: {e}")
        logger.debug("Wrote %s", path)
        return path

    def write_prompt(self, part: int, prompt: str, attempt: int = 1) -> Path:
        return self._write_text(self.prompt_path(part, attempt), prompt)

    def write_response(self, part: int, attempt: int, text: str) -> Path:
        return self._write_text(self.response_path(part, attempt), text)

    def write_parsed(self, part: int, attempt: int, entries: list[SubtitleEntry]) -> Path:
        try:
            payload = json.dumps([e.to_dict() for e in entries], ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            raise ArtifactWriteError(f"Failed to serialise parsed entries for part {part}: {e}")
        return self._write_text(self.parsed_path(part, attempt), payload)

    # ── Readers ───────────────────────────────────────────────────────

    def read_response(self, part: int, attempt: int) -> str | None:
        path = self.response_path(part, attempt)
        try:
            return path.read_text(encoding='utf-8')
        except OSError as e:
            logger.warning("Could not read response %s: %s", path, e)
            return None

    @staticmethod
    def read_parsed(path: Path) -> list[SubtitleEntry]:
        with open(path, 'r', encoding='utf-8') as f:
            return [SubtitleEntry.from_dict(d) for d in json.load(f)]

    @staticmethod
    def parsed_output_exists(chunk: Chunk) -> bool:
        """A completed chunk is only resumable-as-done if its output is on disk."""
        return bool(chunk.parsed_data_path) and Path(chunk.parsed_data_path).is_file()
