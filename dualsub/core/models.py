"""
Data models (plain dataclasses) for dualsub.
"""

from dataclasses import dataclass, field, fields, asdict
from typing import Optional

from dualsub.core.constants import ChunkStatus, Severity


@dataclass
class Chunk:
    part_number: int
    status: str = ChunkStatus.PENDING
    source_transcript_path: Optional[str] = None
    reference_srt_path: Optional[str] = None
    prompt_path: Optional[str] = None
    response_path: Optional[str] = None
    parsed_data_path: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    token_counts: list[dict] = field(default_factory=list)
    start_sec: Optional[float] = None
    end_sec: Optional[float] = None
    attempts: int = 0
    updated_at: Optional[str] = None
    # Upstream descriptor keys this stage does not model, kept verbatim
    extra: dict = field(default_factory=dict)
    # "camel" when imported from an upstream camelCase chunk_info.json
    key_style: str = "snake"

    def to_dict(self) -> dict:
        data = asdict(self)
        data['token_counts'] = [dict(t) for t in self.token_counts]
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Chunk":
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['part_number'] = int(values['part_number'])
        values['token_counts'] = [dict(t) for t in values.get('token_counts') or []]
        values['extra'] = dict(values.get('extra') or {})
        return cls(**values)


@dataclass(frozen=True)
class ProcessingIssue:
    type: str
    severity: str
    message: str
    chunk_part: Optional[int] = None
    subtitle_id: Optional[str] = None
    context: Optional[str] = None
    line_number: Optional[int] = None

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SubtitleEntry:
    original_id: str
    translations: dict[str, Optional[str]] = field(default_factory=dict)
    original_line: Optional[str] = None
    original_timing: Optional[str] = None
    start_sec: Optional[float] = None
    end_sec: Optional[float] = None
    source_chunk: int = 0
    attempt: int = 1
    source_format: str = "direct_tag"

    def has_text(self) -> bool:
        """True when at least one language carries non-empty text."""
        return any(v and v.strip() for v in self.translations.values())

    def has_timing(self) -> bool:
        return self.start_sec is not None and self.end_sec is not None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "SubtitleEntry":
        return cls(**data)


@dataclass
class ReferenceEntry:
    """One cue of a reference SRT track."""
    id: int
    timing: str
    start_sec: float
    end_sec: float
    text: str


@dataclass
class Attempt:
    """One invoke → parse → validate cycle of a chunk that failed validation."""
    attempt_number: int
    raw_text: str
    parsing_issues: list[ProcessingIssue] = field(default_factory=list)
    validation_issues: list[ProcessingIssue] = field(default_factory=list)
    entry_count: int = 0

    @property
    def error_messages(self) -> list[str]:
        return [i.message for i in self.validation_issues if i.is_error]


@dataclass
class BackendResult:
    text: str
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
