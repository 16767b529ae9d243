"""Configuration constants, session timing defaults, and .env loading.

WHY: Session timing (render tick, debounce, hold, hook timeout) and memory
bounds are tuning knobs that differ between a live overlay and an offline
replay. Keeping them as plain module-level values makes them easy to find
and override without touching logic.

HOW: python-dotenv loads the .env file on import. Each constant reads a
CAPTION_SYNC_* environment variable with a hard-coded default.
SessionSettings bundles the values a CaptionSession needs; from_env()
re-reads the environment so tests can monkeypatch it.

RULES:
- Every timing value is integer milliseconds
- A malformed integer in the environment falls back to the default
- The proxy URL has no default; load_proxy_url() raises when it is unset
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Session timing defaults (ms)
# ---------------------------------------------------------------------------

HOLD_MS = _env_int("CAPTION_SYNC_HOLD_MS", 900)
RENDER_INTERVAL_MS = _env_int("CAPTION_SYNC_RENDER_INTERVAL_MS", 120)
BUILD_DEBOUNCE_MS = _env_int("CAPTION_SYNC_BUILD_DEBOUNCE_MS", 300)
FLUSH_INTERVAL_MS = _env_int("CAPTION_SYNC_FLUSH_INTERVAL_MS", 150)
HOOK_TIMEOUT_MS = _env_int("CAPTION_SYNC_HOOK_TIMEOUT_MS", 2500)
DEDUPE_TTL_MS = _env_int("CAPTION_SYNC_DEDUPE_TTL_MS", 60_000)

# ---------------------------------------------------------------------------
# Memory bounds
# ---------------------------------------------------------------------------

BATCH_SIZE = _env_int("CAPTION_SYNC_BATCH_SIZE", 20)
PRUNE_BEHIND_MS = _env_int("CAPTION_SYNC_PRUNE_BEHIND_MS", 45_000)
MAX_CUES_PER_TRACK = _env_int("CAPTION_SYNC_MAX_CUES_PER_TRACK", 300)

PARSE_ERROR_FALLBACK_THRESHOLD = 3
"""Consecutive upstream parse errors before switching to DOM fallback."""

# ---------------------------------------------------------------------------
# Translation proxy
# ---------------------------------------------------------------------------

DEFAULT_TARGET_LANG = os.getenv("CAPTION_SYNC_TARGET_LANG", "EN")
PROXY_TIMEOUT_S = 30.0


def load_proxy_url() -> str:
    """Load the translation proxy base URL from the environment.

    WHY: The proxy holds the translation provider credentials, so the
    engine only needs its address. Reading it from .env keeps deployment
    details out of source code.

    HOW: Reads CAPTION_SYNC_PROXY_URL (populated by python-dotenv).

    RULES:
    - Raises ValueError if the URL is missing or empty
    - Trailing slashes are stripped
    """
    url = os.getenv("CAPTION_SYNC_PROXY_URL", "").strip().rstrip("/")
    if not url:
        raise ValueError(
            "Translation proxy not configured. "
            "Add CAPTION_SYNC_PROXY_URL to the .env file."
        )
    return url


@dataclass
class SessionSettings:
    """Timing and memory settings for one CaptionSession."""

    hold_ms: int = HOLD_MS
    render_interval_ms: int = RENDER_INTERVAL_MS
    build_debounce_ms: int = BUILD_DEBOUNCE_MS
    flush_interval_ms: int = FLUSH_INTERVAL_MS
    hook_timeout_ms: int = HOOK_TIMEOUT_MS
    dedupe_ttl_ms: int = DEDUPE_TTL_MS
    batch_size: int = BATCH_SIZE
    prune_behind_ms: int = PRUNE_BEHIND_MS
    max_cues_per_track: int = MAX_CUES_PER_TRACK
    parse_error_threshold: int = PARSE_ERROR_FALLBACK_THRESHOLD

    @classmethod
    def from_env(cls) -> SessionSettings:
        return cls(
            hold_ms=_env_int("CAPTION_SYNC_HOLD_MS", 900),
            render_interval_ms=_env_int("CAPTION_SYNC_RENDER_INTERVAL_MS", 120),
            build_debounce_ms=_env_int("CAPTION_SYNC_BUILD_DEBOUNCE_MS", 300),
            flush_interval_ms=_env_int("CAPTION_SYNC_FLUSH_INTERVAL_MS", 150),
            hook_timeout_ms=_env_int("CAPTION_SYNC_HOOK_TIMEOUT_MS", 2500),
            dedupe_ttl_ms=_env_int("CAPTION_SYNC_DEDUPE_TTL_MS", 60_000),
            batch_size=_env_int("CAPTION_SYNC_BATCH_SIZE", 20),
            prune_behind_ms=_env_int("CAPTION_SYNC_PRUNE_BEHIND_MS", 45_000),
            max_cues_per_track=_env_int("CAPTION_SYNC_MAX_CUES_PER_TRACK", 300),
        )
