"""
Application configuration manager.
Stores run settings in a JSON file under ~/.config/dualsub.
"""

import json
import logging
from pathlib import Path

from dualsub.core.constants import (
    CONFIG_PATH, DEFAULT_INTERMEDIATE_DIR, BackendName, ALL_POLICY_CHECKS,
    DEFAULT_BACKEND, DEFAULT_MODEL, DEFAULT_TARGET_LANGUAGE,
    DEFAULT_API_RETRIES, DEFAULT_VALIDATION_RETRIES, DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_BACKOFF_SEC, DEFAULT_REQUEST_TIMEOUT_SEC,
    DEFAULT_MAX_OUTPUT_TOKENS, DEFAULT_TEMPERATURE, OPENAI_API_BASE,
    DEFAULT_RELAXED_TAIL_CHECKS,
    MAX_PARSE_ERROR_RATE, MIN_COUNT_MATCH_RATE, MIN_ID_COVERAGE_RATE,
    MAX_TIMING_MISMATCH_RATE, TIMING_MARGIN_SEC, OVERLAP_TOLERANCE_SEC,
    MAX_EMPTY_TEXT_RATE,
)

# Validation bounds
_RETRIES_MAX = 10
_CONCURRENCY_MAX = 64
_BACKOFF_MAX = 600
_TIMEOUT_MIN = 10
_TIMEOUT_MAX = 3600

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'backend': DEFAULT_BACKEND,
    'model': DEFAULT_MODEL,
    'target_languages': [DEFAULT_TARGET_LANGUAGE],
    'api_retries': DEFAULT_API_RETRIES,
    'validation_retries': DEFAULT_VALIDATION_RETRIES,
    'max_concurrent': DEFAULT_MAX_CONCURRENT,
    'force': False,
    'timing_check': True,
    'only_part': None,
    'prompt_template_path': None,
    'intermediate_dir': str(DEFAULT_INTERMEDIATE_DIR),
    'max_backoff_sec': DEFAULT_MAX_BACKOFF_SEC,
    'request_timeout_sec': DEFAULT_REQUEST_TIMEOUT_SEC,
    'max_output_tokens': DEFAULT_MAX_OUTPUT_TOKENS,
    'temperature': DEFAULT_TEMPERATURE,
    'openai_base_url': OPENAI_API_BASE,
    'relaxed_tail_checks': list(DEFAULT_RELAXED_TAIL_CHECKS),
    'max_parse_error_rate': MAX_PARSE_ERROR_RATE,
    'min_count_match_rate': MIN_COUNT_MATCH_RATE,
    'min_id_coverage_rate': MIN_ID_COVERAGE_RATE,
    'max_timing_mismatch_rate': MAX_TIMING_MISMATCH_RATE,
    'timing_margin_sec': TIMING_MARGIN_SEC,
    'overlap_tolerance_sec': OVERLAP_TOLERANCE_SEC,
    'max_empty_text_rate': MAX_EMPTY_TEXT_RATE,
}

_INT_BOUNDS = {
    'api_retries': (0, _RETRIES_MAX),
    'validation_retries': (0, _RETRIES_MAX),
    'max_concurrent': (1, _CONCURRENCY_MAX),
    'max_backoff_sec': (0, _BACKOFF_MAX),
    'request_timeout_sec': (_TIMEOUT_MIN, _TIMEOUT_MAX),
    'max_output_tokens': (1, 1_000_000),
}

_RATE_KEYS = (
    'max_parse_error_rate', 'min_count_match_rate', 'min_id_coverage_rate',
    'max_timing_mismatch_rate', 'max_empty_text_rate',
)

_SECONDS_KEYS = ('timing_margin_sec', 'overlap_tolerance_sec')


def default_config() -> dict:
    """Fresh copy of the built-in defaults (no file involved)."""
    return json.loads(json.dumps(_DEFAULTS))


class AppConfig:
    """Manages run configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = Path(config_path) if config_path else CONFIG_PATH
        self._data: dict = {}
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = default_config()
        if self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    saved = json.load(f)
            except Exception as e:
                logger.warning("Failed to load config %s: %s", self.path, e)
                return
            if not isinstance(saved, dict):
                logger.warning("Ignoring config %s: top level is not an object", self.path)
                return
            for key, value in saved.items():
                if key not in _DEFAULTS:
                    logger.warning("Unknown config key %r ignored", key)
                    continue
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def update(self, values: dict, persist: bool = False):
        """Apply several overrides at once; None values are skipped."""
        for key, value in values.items():
            if value is None:
                continue
            if key not in _DEFAULTS:
                raise KeyError(f"Unknown config key: {key}")
            self._data[key] = self._validate(key, value)
        if persist:
            self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _INT_BOUNDS:
            low, high = _INT_BOUNDS[key]
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(low, min(high, value))

        if key in _RATE_KEYS:
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(0.0, min(1.0, value))

        if key in _SECONDS_KEYS or key == 'temperature':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(0.0, value)

        if key == 'backend':
            valid = (BackendName.ANTHROPIC, BackendName.GEMINI, BackendName.OPENAI)
            if value not in valid:
                logger.warning("Invalid backend %r, using %s", value, DEFAULT_BACKEND)
                return DEFAULT_BACKEND

        if key == 'target_languages':
            if isinstance(value, str):
                value = [v.strip() for v in value.split(',')]
            value = [str(v).strip() for v in value or [] if str(v).strip()]
            if not value:
                logger.warning("Empty target_languages, using %s", DEFAULT_TARGET_LANGUAGE)
                return [DEFAULT_TARGET_LANGUAGE]
            return value

        if key == 'relaxed_tail_checks':
            if isinstance(value, str):
                value = [v.strip() for v in value.split(',') if v.strip()]
            checks = []
            for check in value or []:
                if check in ALL_POLICY_CHECKS:
                    checks.append(check)
                else:
                    logger.warning("Unknown relaxed check %r ignored", check)
            return checks

        if key == 'only_part':
            if value is None:
                return None
            try:
                return int(value)
            except (TypeError, ValueError):
                logger.warning("Invalid only_part %r, ignoring filter", value)
                return None

        if key in ('force', 'timing_check'):
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return json.loads(json.dumps(self._data))

    @property
    def backend(self) -> str:
        return self._data.get('backend', DEFAULT_BACKEND)

    @property
    def model(self) -> str:
        return self._data.get('model', DEFAULT_MODEL)

    @property
    def intermediate_dir(self) -> Path:
        return Path(self._data.get('intermediate_dir') or DEFAULT_INTERMEDIATE_DIR)

    @intermediate_dir.setter
    def intermediate_dir(self, value):
        self._data['intermediate_dir'] = str(value)
        self.save()

    @property
    def target_languages(self) -> list[str]:
        return list(self._data.get('target_languages') or [DEFAULT_TARGET_LANGUAGE])
