"""
SQLite state store for dualsub.
Holds the chunk list, run history and the issues each run produced.
Thread-safe via check_same_thread=False + a single writer lock.
"""

import json
import sqlite3
import threading
import logging
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path

from dualsub.core.constants import ChunkStatus
from dualsub.core.models import Chunk, ProcessingIssue

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 2

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS chunks (
    part_number INTEGER PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending',
    source_transcript_path TEXT,
    reference_srt_path TEXT,
    prompt_path TEXT,
    response_path TEXT,
    parsed_data_path TEXT,
    error TEXT,
    error_type TEXT,
    token_counts TEXT DEFAULT '[]',
    start_sec REAL,
    end_sec REAL,
    attempts INTEGER DEFAULT 0,
    updated_at TEXT,
    extra TEXT DEFAULT '{}',
    key_style TEXT DEFAULT 'snake'
);

CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    started_at TEXT,
    finished_at TEXT,
    backend TEXT,
    model TEXT,
    selected INTEGER DEFAULT 0,
    succeeded INTEGER DEFAULT 0,
    failed INTEGER DEFAULT 0,
    skipped INTEGER DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    estimated_cost REAL DEFAULT 0,
    exit_code INTEGER
);

CREATE TABLE IF NOT EXISTS run_issues (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    type TEXT NOT NULL,
    severity TEXT NOT NULL,
    message TEXT NOT NULL,
    chunk_part INTEGER,
    subtitle_id TEXT,
    context TEXT,
    line_number INTEGER,
    FOREIGN KEY (run_id) REFERENCES runs(id)
);

CREATE INDEX IF NOT EXISTS idx_run_issues_run ON run_issues(run_id);
"""

# Upstream chunk_info.json keys → Chunk attributes
_DESCRIPTOR_KEYS = {
    'partNumber': 'part_number',
    'adjustedTranscriptPath': 'source_transcript_path',
    'srtChunkPath': 'reference_srt_path',
    'promptPath': 'prompt_path',
    'responsePath': 'response_path',
    'parsedDataPath': 'parsed_data_path',
    'startTimeSeconds': 'start_sec',
    'endTimeSeconds': 'end_sec',
    'tokenCounts': 'token_counts',
    'errorType': 'error_type',
    'updatedAt': 'updated_at',
}
_CAMEL_KEYS = {v: k for k, v in _DESCRIPTOR_KEYS.items()}

# Columns added after schema version 1
_ADDED_COLUMNS = {
    'extra': "TEXT DEFAULT '{}'",
    'key_style': "TEXT DEFAULT 'snake'",
}

_CHUNK_FIELDS = {f.name for f in fields(Chunk)}

_KNOWN_STATUSES = {
    ChunkStatus.PENDING, ChunkStatus.PROMPTING, ChunkStatus.TRANSLATING,
    ChunkStatus.PARSING, ChunkStatus.VALIDATING, ChunkStatus.COMPLETED,
    ChunkStatus.FAILED,
}


def chunk_from_descriptor(data: dict) -> Chunk:
    """
    Accept either our own snake_case dicts or upstream camelCase descriptors.
    Keys this stage does not model are kept in ``extra`` for the write-back.
    """
    camel = any(k in _DESCRIPTOR_KEYS for k in data)
    values, extra = {}, {}
    for key, value in data.items():
        name = _DESCRIPTOR_KEYS.get(key, key)
        if name in _CHUNK_FIELDS:
            values[name] = value
        else:
            extra[key] = value
    values['extra'] = {**(values.get('extra') or {}), **extra}
    if camel:
        values['key_style'] = "camel"
    if values.get('status') not in _KNOWN_STATUSES:
        # splitting/transcribing and unknown stages are not ours to resume
        values['status'] = ChunkStatus.PENDING
    return Chunk.from_dict(values)


def chunk_to_descriptor(chunk: Chunk, camel_case: bool) -> dict:
    """Inverse of chunk_from_descriptor for the requested key style."""
    data = chunk.to_dict()
    if not camel_case:
        return data
    extra = data.pop('extra')
    data.pop('key_style')
    descriptor = dict(extra)
    for key, value in data.items():
        descriptor[_CAMEL_KEYS.get(key, key)] = value
    return descriptor


class Database:
    """SQLite database wrapper for the chunk state store."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._ensure_dirs()
        self._lock = threading.Lock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        existing = {row[1] for row in cur.execute("PRAGMA table_info(chunks)")}
        for column, ddl in _ADDED_COLUMNS.items():
            if column not in existing:
                cur.execute(f"ALTER TABLE chunks ADD COLUMN {column} {ddl}")
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        data = dict(row)
        data['token_counts'] = json.loads(data.get('token_counts') or '[]')
        data['extra'] = json.loads(data.get('extra') or '{}')
        data['key_style'] = data.get('key_style') or "snake"
        return Chunk(**data)

    @staticmethod
    def _row_to_issue(row: sqlite3.Row) -> ProcessingIssue:
        data = dict(row)
        data.pop('id', None)
        data.pop('run_id', None)
        return ProcessingIssue(**data)

    # ── Chunk CRUD ────────────────────────────────────────────────────

    def upsert_chunks(self, chunks: list[Chunk]):
        now = self._now()
        rows = []
        for c in chunks:
            c.updated_at = now
            rows.append((
                c.part_number, c.status, c.source_transcript_path,
                c.reference_srt_path, c.prompt_path, c.response_path,
                c.parsed_data_path, c.error, c.error_type,
                json.dumps(c.token_counts), c.start_sec, c.end_sec,
                c.attempts, c.updated_at,
                json.dumps(c.extra, ensure_ascii=False), c.key_style,
            ))
        with self._lock:
            self.conn.executemany(
                """INSERT OR REPLACE INTO chunks
                   (part_number, status, source_transcript_path,
                    reference_srt_path, prompt_path, response_path,
                    parsed_data_path, error, error_type, token_counts,
                    start_sec, end_sec, attempts, updated_at, extra, key_style)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
            self.conn.commit()

    def get_chunks(self) -> list[Chunk]:
        rows = self.conn.execute(
            "SELECT * FROM chunks ORDER BY part_number"
        ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def get_chunk(self, part_number: int) -> Chunk | None:
        row = self.conn.execute(
            "SELECT * FROM chunks WHERE part_number = ?", (part_number,)
        ).fetchone()
        return self._row_to_chunk(row) if row else None

    def update_chunk(self, part_number: int, **kwargs):
        if 'token_counts' in kwargs:
            kwargs['token_counts'] = json.dumps(kwargs['token_counts'])
        if 'extra' in kwargs:
            kwargs['extra'] = json.dumps(kwargs['extra'], ensure_ascii=False)
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [part_number]
        with self._lock:
            self.conn.execute(
                f"UPDATE chunks SET {sets} WHERE part_number = ?", vals
            )
            self.conn.commit()

    def import_json(self, path: Path) -> list[Chunk]:
        """Load a chunk_info.json list into the store (replacing same parts)."""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a JSON list of chunk descriptors")
        chunks = [chunk_from_descriptor(d) for d in data]
        self.upsert_chunks(chunks)
        logger.info("Imported %d chunks from %s", len(chunks), path)
        return chunks

    def export_json(self, path: Path, camel_case: bool | None = None) -> int:
        """
        Write the chunk list as JSON. By default the list goes back out in
        camelCase when any chunk was imported from an upstream descriptor.
        """
        chunks = self.get_chunks()
        if camel_case is None:
            camel_case = any(c.key_style == "camel" for c in chunks)
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump([chunk_to_descriptor(c, camel_case) for c in chunks], f,
                      indent=2, ensure_ascii=False)
        logger.info("Exported %d chunks to %s", len(chunks), path)
        return len(chunks)

    # ── Runs ──────────────────────────────────────────────────────────

    def create_run(self, backend: str, model: str, selected: int) -> int:
        with self._lock:
            cur = self.conn.execute(
                "INSERT INTO runs (started_at, backend, model, selected) VALUES (?, ?, ?, ?)",
                (self._now(), backend, model, selected),
            )
            self.conn.commit()
            return cur.lastrowid

    def finish_run(self, run_id: int, **kwargs):
        kwargs['finished_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [run_id]
        with self._lock:
            self.conn.execute(f"UPDATE runs SET {sets} WHERE id = ?", vals)
            self.conn.commit()

    def get_last_run(self) -> dict | None:
        row = self.conn.execute(
            "SELECT * FROM runs ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return dict(row) if row else None

    def add_issues(self, run_id: int, issues: list[ProcessingIssue]):
        with self._lock:
            self.conn.executemany(
                """INSERT INTO run_issues
                   (run_id, type, severity, message, chunk_part,
                    subtitle_id, context, line_number)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [(run_id, i.type, i.severity, i.message, i.chunk_part,
                  i.subtitle_id, i.context, i.line_number) for i in issues],
            )
            self.conn.commit()

    def get_run_issues(self, run_id: int) -> list[ProcessingIssue]:
        rows = self.conn.execute(
            "SELECT * FROM run_issues WHERE run_id = ? ORDER BY id", (run_id,)
        ).fetchall()
        return [self._row_to_issue(r) for r in rows]
