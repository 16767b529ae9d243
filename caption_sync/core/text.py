"""Text normalization, word counting, and cue confidence scoring.

WHY: Every producer (ASR stabilizer, manual merger, DOM committer) and the
render policy compare caption text. They must agree on what "the same text"
means, otherwise cue ids drift and de-duplication silently breaks.

HOW: Small pure functions over strings. normalize_text() is the canonical
whitespace form used for ids and comparisons. normalize_caption_text() adds
the caption-specific filters (length bounds, music-only and symbol-only
lines). calculate_cue_confidence() is a weighted heuristic over word count,
pacing, punctuation, and length.

RULES:
- None and empty input always normalize to ""
- Confidence is rounded to 3 decimals and clamped to [0, 1]
- No function here raises on any str/None input
"""

from __future__ import annotations

import re
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")

# Lines that are only music notes, bullets, or ASCII punctuation.
_MUSIC_ONLY_RE = re.compile(r"^[\s♪♫♬♩♭♯•·.,!?'\"`~:;()\[\]{}<>|\\/+=_-]*$")

_TERMINAL_PUNCT_RE = re.compile(r"[.?!。？！…]$")
_ASCII_ALNUM_RE = re.compile(r"[a-z0-9]", re.IGNORECASE)

DEFAULT_MIN_CAPTION_LENGTH = 2
DEFAULT_MAX_CAPTION_LENGTH = 240


def normalize_text(text: Optional[str]) -> str:
    """Collapse whitespace runs to single spaces and strip the ends."""
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()


def _has_letter_or_digit(text: str) -> bool:
    return any(ch.isalnum() for ch in text)


def normalize_caption_text(
    raw: Optional[str],
    min_length: int = DEFAULT_MIN_CAPTION_LENGTH,
    max_length: int = DEFAULT_MAX_CAPTION_LENGTH,
) -> str:
    """Normalize caption text, returning "" for lines that are not captions.

    WHY: Caption tracks carry filler lines ("♪♪♪", ">>", a lone ".") that
    must never become cues or be sent for translation.

    HOW: normalize_text(), then reject by length bounds, by the music/symbol
    pattern, and when no letter or digit is present.

    RULES:
    - min_length is floored at 1, max_length at min_length
    - Returns the normalized text unchanged when it passes every filter
    """
    min_len = max(1, int(min_length))
    max_len = max(min_len, int(max_length))
    text = normalize_text(raw)
    if not text:
        return ""
    if len(text) < min_len or len(text) > max_len:
        return ""
    if _MUSIC_ONLY_RE.match(text):
        return ""
    if not _has_letter_or_digit(text):
        return ""
    return text


def count_words(text: Optional[str]) -> int:
    normalized = normalize_text(text)
    if not normalized:
        return 0
    return len(normalized.split(" "))


def has_terminal_punctuation(text: Optional[str]) -> bool:
    """True if the normalized text ends with sentence punctuation."""
    return bool(_TERMINAL_PUNCT_RE.search(normalize_text(text)))


def calculate_cue_confidence(
    text: Optional[str],
    start_ms: int,
    end_ms: int,
    word_count: Optional[int] = None,
) -> float:
    """Score how likely a cue is a complete, well-paced sentence.

    WHY: The render policy breaks ties between overlapping cues by
    confidence, and the low-confidence detector uses the average to spot
    over-segmented ASR streams.

    HOW: Start from 0.25 and add or subtract fixed weights:
      +0.20  3..22 words
      +0.35  terminal punctuation
      +0.12  >= 180 ms per word, +0.08 more at >= 260 ms per word
      +0.08  at least 14 characters
      -0.10  more than 220 characters
      -0.15  no ASCII letter or digit at all

    RULES:
    - Empty text scores 0
    - Duration is floored at 1 ms so pacing is always defined
    - Result is rounded to 3 decimals and clamped to [0, 1]
    """
    normalized = normalize_text(text)
    if not normalized:
        return 0.0

    words = word_count if word_count and word_count > 0 else count_words(normalized)
    duration = max(1, int(end_ms or 0) - int(start_ms or 0))
    ms_per_word = duration / words if words > 0 else duration

    score = 0.25
    if 3 <= words <= 22:
        score += 0.2
    if has_terminal_punctuation(normalized):
        score += 0.35
    if ms_per_word >= 180:
        score += 0.12
    if ms_per_word >= 260:
        score += 0.08
    if len(normalized) >= 14:
        score += 0.08
    if len(normalized) > 220:
        score -= 0.1
    if not _ASCII_ALNUM_RE.search(normalized):
        score -= 0.15

    return max(0.0, min(1.0, round(score, 3)))
