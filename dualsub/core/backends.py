"""
LLM backend adapters.

Every backend exposes one async capability, ``invoke(prompt, model)``, that
returns a BackendResult or None. Transport errors, non-200 responses,
undecodable bodies and empty text all come back as None; nothing raises.
The HTTP call itself is a blocking ``requests.post`` run in a worker thread.
"""

import asyncio
import json
import logging

import requests

from dualsub.core.constants import (
    BackendName,
    ANTHROPIC_API_URL,
    ANTHROPIC_API_VERSION,
    GEMINI_API_BASE,
    OPENAI_API_BASE,
    DEFAULT_MAX_OUTPUT_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_REQUEST_TIMEOUT_SEC,
)
from dualsub.core.models import BackendResult

logger = logging.getLogger(__name__)

_ERROR_BODY_LEN = 300


class LLMBackend:
    """Base class: subclasses build the request and extract the text."""

    name = "base"

    def __init__(self, api_key: str | None,
                 max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
                 temperature: float = DEFAULT_TEMPERATURE,
                 timeout_sec: int = DEFAULT_REQUEST_TIMEOUT_SEC):
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.timeout_sec = timeout_sec

    async def invoke(self, prompt: str, model: str) -> BackendResult | None:
        return await asyncio.to_thread(self.invoke_sync, prompt, model)

    def invoke_sync(self, prompt: str, model: str) -> BackendResult | None:
        if not self.api_key:
            logger.error("%s API key not configured", self.name)
            return None

        url, headers, payload = self._build_request(prompt, model)
        try:
            resp = requests.post(url, headers=headers, json=payload,
                                 timeout=self.timeout_sec)
        except requests.exceptions.Timeout:
            logger.warning("%s request timed out after %ss", self.name, self.timeout_sec)
            return None
        except requests.exceptions.ConnectionError:
            logger.warning("Network error connecting to %s", self.name)
            return None
        except requests.exceptions.RequestException as e:
            logger.warning("%s request failed: %s", self.name, e)
            return None

        if resp.status_code != 200:
            # Sanitize error message (never log API key)
            error_body = resp.text[:_ERROR_BODY_LEN] if resp.text else "No response body"
            logger.warning("%s returned %s: %s", self.name, resp.status_code, error_body)
            return None

        try:
            data = resp.json()
        except (json.JSONDecodeError, ValueError):
            logger.warning("Failed to parse %s response JSON", self.name)
            return None

        try:
            result = self._extract(data)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("Unexpected %s response shape: %s", self.name, e)
            return None

        if not result.text or not result.text.strip():
            logger.warning("%s response was empty", self.name)
            return None

        logger.debug("Received %s response (length %d)", self.name, len(result.text))
        return result

    def _build_request(self, prompt: str, model: str) -> tuple[str, dict, dict]:
        raise NotImplementedError

    def _extract(self, data: dict) -> BackendResult:
        raise NotImplementedError


class AnthropicBackend(LLMBackend):
    """Anthropic Messages API."""

    name = BackendName.ANTHROPIC

    def __init__(self, api_key, api_url: str = ANTHROPIC_API_URL, **kwargs):
        super().__init__(api_key, **kwargs)
        self.api_url = api_url

    def _build_request(self, prompt, model):
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_API_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": model,
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.api_url, headers, payload

    def _extract(self, data):
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return BackendResult(
            text=text,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )


class GeminiBackend(LLMBackend):
    """Google Generative Language generateContent."""

    name = BackendName.GEMINI

    def __init__(self, api_key, api_base: str = GEMINI_API_BASE, **kwargs):
        super().__init__(api_key, **kwargs)
        self.api_base = api_base.rstrip("/")

    def _build_request(self, prompt, model):
        url = f"{self.api_base}/models/{model}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key,
            "content-type": "application/json",
        }
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": self.max_output_tokens,
                "temperature": self.temperature,
            },
        }
        return url, headers, payload

    def _extract(self, data):
        candidates = data.get("candidates") or []
        text = ""
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts)
        usage = data.get("usageMetadata") or {}
        return BackendResult(
            text=text,
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
        )


class OpenAICompatibleBackend(LLMBackend):
    """Any /chat/completions endpoint (OpenAI, OpenRouter, local servers)."""

    name = BackendName.OPENAI

    def __init__(self, api_key, base_url: str = OPENAI_API_BASE, **kwargs):
        super().__init__(api_key, **kwargs)
        self.base_url = base_url.rstrip("/")

    def _build_request(self, prompt, model):
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "stream": False,
        }
        return f"{self.base_url}/chat/completions", headers, payload

    def _extract(self, data):
        choices = data.get("choices") or []
        text = ""
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return BackendResult(
            text=text,
            input_tokens=usage.get("prompt_tokens"),
            output_tokens=usage.get("completion_tokens"),
        )


_BACKENDS = {
    BackendName.ANTHROPIC: AnthropicBackend,
    BackendName.GEMINI: GeminiBackend,
    BackendName.OPENAI: OpenAICompatibleBackend,
}


def create_backend(name: str, api_key: str | None, **options) -> LLMBackend:
    """Instantiate the backend registered under ``name``."""
    try:
        cls = _BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unknown backend: {name!r} (expected one of {sorted(_BACKENDS)})")
    return cls(api_key, **options)


def backend_from_config(config: dict, api_key: str | None) -> LLMBackend:
    options = {
        'max_output_tokens': config.get('max_output_tokens', DEFAULT_MAX_OUTPUT_TOKENS),
        'temperature': config.get('temperature', DEFAULT_TEMPERATURE),
        'timeout_sec': config.get('request_timeout_sec', DEFAULT_REQUEST_TIMEOUT_SEC),
    }
    name = config.get('backend', BackendName.ANTHROPIC)
    if name == BackendName.OPENAI and config.get('openai_base_url'):
        options['base_url'] = config['openai_base_url']
    return create_backend(name, api_key, **options)
