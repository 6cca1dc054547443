"""
Security utilities for dualsub.
- Safe subprocess execution (argument arrays only)
- API key resolution: environment first, then macOS Keychain
"""

import os
import subprocess
import logging

from dualsub.core.constants import (
    BACKEND_API_KEY_ENV,
    KEYCHAIN_SERVICE_PREFIX,
    KEYCHAIN_ACCOUNT,
)

logger = logging.getLogger(__name__)


# ── Subprocess safety ─────────────────────────────────────────────────

def run_subprocess_capture(args: list[str], timeout: int = 30) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only and capture its output.
    shell=True is never used.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")

    logger.debug("Running subprocess: %s", args[0] if args else "")
    return subprocess.run(
        list(args),
        shell=False,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


# ── Keychain integration (macOS) ──────────────────────────────────────

def keychain_service(backend: str) -> str:
    return f"{KEYCHAIN_SERVICE_PREFIX}{backend}"


def keychain_get_api_key(backend: str) -> str | None:
    """Retrieve a backend API key from macOS Keychain."""
    try:
        result = run_subprocess_capture([
            "security", "find-generic-password",
            "-s", keychain_service(backend),
            "-a", KEYCHAIN_ACCOUNT,
            "-w",  # print password only
        ], timeout=10)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip()
    except (subprocess.TimeoutExpired, FileNotFoundError):
        pass
    except Exception as e:
        logger.warning("Keychain read failed: %s", type(e).__name__)
    return None


def keychain_set_api_key(backend: str, api_key: str) -> bool:
    """Store or update a backend API key in macOS Keychain."""
    try:
        result = run_subprocess_capture([
            "security", "add-generic-password",
            "-s", keychain_service(backend),
            "-a", KEYCHAIN_ACCOUNT,
            "-w", api_key,
            "-U",  # update if exists
        ], timeout=10)
        return result.returncode == 0
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.error("Keychain write failed: %s", type(e).__name__)
        return False


def get_api_key(backend: str) -> str | None:
    """Resolve the API key for a backend. Never logs the key itself."""
    env_name = BACKEND_API_KEY_ENV.get(backend)
    if env_name:
        value = os.environ.get(env_name, "").strip()
        if value:
            return value
    key = keychain_get_api_key(backend)
    if key is None:
        logger.debug("No API key found for backend %s", backend)
    return key
