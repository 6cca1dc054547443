"""
Shared constants for dualsub.
Status names, issue types, defaults and thresholds used across the package.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "dualsub"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

APP_CONFIG_DIR = HOME / ".config" / APP_NAME
CONFIG_PATH = APP_CONFIG_DIR / "config.json"
DEFAULT_INTERMEDIATE_DIR = pathlib.Path("output") / "intermediates"

DB_FILENAME = "state.db"
LOG_FILENAME = "pipeline.log"

# Per-attempt artifact folders (under the intermediate dir)
PROMPTS_DIRNAME = "prompts"
RESPONSES_DIRNAME = "llm_responses"
PARSED_DIRNAME = "parsed_data"

# ── Keychain identifiers ─────────────────────────────────────────────
KEYCHAIN_SERVICE_PREFIX = "dualsub:"
KEYCHAIN_ACCOUNT = "default"

# ── Chunk status values ───────────────────────────────────────────────
class ChunkStatus:
    PENDING = "pending"
    PROMPTING = "prompting"
    TRANSLATING = "translating"
    PARSING = "parsing"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

TERMINAL_STATUSES = {ChunkStatus.COMPLETED, ChunkStatus.FAILED}

# ── Issue types ───────────────────────────────────────────────────────
class IssueType:
    # Chunk-level (terminal)
    PROMPT_GEN = "PromptGenError"
    TRANSLATION = "TranslationError"
    VALIDATION = "ValidationError"
    FORMAT = "FormatError"

    # Parser-level
    MISSING_TAG = "MissingTag"
    INVALID_TIMING_FORMAT = "InvalidTimingFormat"
    INVALID_TIMING_VALUE = "InvalidTimingValue"
    MALFORMED_TAG = "MalformedTag"
    AMBIGUOUS_STRUCTURE = "AmbiguousStructure"
    EXTRACTION_FAILED = "ExtractionFailed"
    DUPLICATE_ID = "DuplicateId"
    NUMBER_NOT_FOUND = "NumberNotFound"
    TEXT_NOT_FOUND = "TextNotFound"
    MARKDOWN_BLOCK_EMPTY = "MarkdownBlockEmptyOrInvalid"

# Parser issues that mean a <subline> block was lost entirely
UNPARSEABLE_ISSUE_TYPES = {
    IssueType.NUMBER_NOT_FOUND,
    IssueType.EXTRACTION_FAILED,
}

class Severity:
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

# ── Backends ──────────────────────────────────────────────────────────
class BackendName:
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    OPENAI = "openai"

BACKEND_API_KEY_ENV = {
    BackendName.ANTHROPIC: "ANTHROPIC_API_KEY",
    BackendName.GEMINI: "GEMINI_API_KEY",
    BackendName.OPENAI: "OPENAI_API_KEY",
}

ANTHROPIC_API_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_API_VERSION = "2023-06-01"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
OPENAI_API_BASE = "https://api.openai.com/v1"

DEFAULT_BACKEND = BackendName.ANTHROPIC
DEFAULT_MODEL = "claude-sonnet-4-5"
DEFAULT_TARGET_LANGUAGE = "Korean"
DEFAULT_MAX_OUTPUT_TOKENS = 16000
DEFAULT_TEMPERATURE = 0.7
DEFAULT_REQUEST_TIMEOUT_SEC = 600

# ── Orchestrator defaults ─────────────────────────────────────────────
DEFAULT_API_RETRIES = 2
DEFAULT_VALIDATION_RETRIES = 1
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_MAX_BACKOFF_SEC = 60
BACKOFF_BASE = 2

# ── Validation defaults ───────────────────────────────────────────────
MAX_PARSE_ERROR_RATE = 0.05       # unparseable blocks vs reference count
MIN_COUNT_MATCH_RATE = 0.9        # parsed entries vs reference count
MIN_ID_COVERAGE_RATE = 0.9        # reference ids present in the response
MAX_TIMING_MISMATCH_RATE = 0.1
TIMING_MARGIN_SEC = 3.0
OVERLAP_TOLERANCE_SEC = 0.5
MAX_EMPTY_TEXT_RATE = 0.05

class PolicyCheck:
    PARSE_ERRORS = "parse_errors"
    COVERAGE = "coverage"
    EMPTY_TEXT = "empty_text"
    TIMING = "timing"

ALL_POLICY_CHECKS = (
    PolicyCheck.PARSE_ERRORS,
    PolicyCheck.COVERAGE,
    PolicyCheck.EMPTY_TEXT,
    PolicyCheck.TIMING,
)

# Checks downgraded to warnings on the last chunk's final attempt
DEFAULT_RELAXED_TAIL_CHECKS = [PolicyCheck.TIMING, PolicyCheck.COVERAGE]

# ── Prompt placeholders ───────────────────────────────────────────────
PLACEHOLDER_TRANSCRIPT = "{ADJUSTED_TRANSCRIPT}"
PLACEHOLDER_REFERENCE = "{REFERENCE_SRT}"
PLACEHOLDER_LANGUAGE = "{TARGET_LANGUAGE_NAME}"
PLACEHOLDER_XML_EXAMPLE = "{TARGET_LANGUAGE_XML_EXAMPLE}"
REFERENCE_UNAVAILABLE = "[Reference SRT not available]"

# ── Misc ──────────────────────────────────────────────────────────────
CONTEXT_SNIPPET_LEN = 150
MAX_ERROR_MESSAGE_LEN = 2000
