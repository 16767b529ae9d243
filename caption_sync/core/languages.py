"""Per-language heuristic tables for the ASR stabilizer.

WHY: ASR tracks differ by language in how words are delimited and which
words reliably start or continue a sentence. Keeping these tables as plain
data makes them easy to tune without touching the grouping algorithm.

HOW: LANGS_CONFIG maps a language code to a config dict with four parts:
  is_space_lang          — words are space-delimited (lower-case + re-merge)
  split_config           — interval breaking and word-count balancing
  merge_config           — boundary-word merging of adjacent groups
  end_compatible_configs — short-tail absorption passes, applied in order
The "base" entry is the language-agnostic default. merge_lang_config()
overlays a language entry on a deep copy of base, one level deep.

RULES:
- Tables are frozen constants; never mutate them at runtime.
- merge_lang_config() always returns a fresh copy.
- Lookup is case-insensitive: exact code first ("en-us"), then the primary
  subtag ("en"). Unknown languages get base only.
- Only English heuristics are tuned; other languages run on base.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, FrozenSet, Optional

# Abbreviations and ordinals whose trailing "." does not end a sentence.
DEFAULT_WORDS_REGEX = (
    r"etc\.|Mr\.|Mrs\.|Ms\.|Dr\.|Prof\.|Sr\.|Jr\.|U\.S\.|U\.K\.|Co\.|Inc\.|Ltd\.|St\.|p\.a\.|\d+\."
)

# First words that mark a manual caption line as continuing the previous one.
MANUAL_CONTINUATION_START_WORDS: FrozenSet[str] = frozenset({
    "and", "but", "or", "so", "because", "if", "then", "that", "which",
    "who", "when", "while", "to", "for", "of", "in", "on",
})

BASE_CONFIG: Dict[str, Any] = {
    "is_space_lang": False,
    "split_config": {
        "min_interval": 1000,
        "max_words": 17,
    },
    "merge_config": {
        "min_interval": 1500,
        "max_words": 19,
    },
}

ENGLISH_CONFIG: Dict[str, Any] = {
    "is_space_lang": True,
    "split_config": {
        "symbol_break_words": ["mhm", "um", ">>", "- "],
        "break_mini_time": 300,
        "break_words": [
            "mhm", "um", ">>", "- ",
            "in fact", "such as", "or even", "get me", "well i'm", "i didn't",
            "i know", "i need", "i will", "i'll", "i mean", "you are",
            "what does", "no problem", "as we", "if you",
            "hello", "okay", "oh", "yep", "yes", "hey", "hi", "yeah",
            "essentially", "because", "and", "but", "which", "so", "where",
            "what", "now", "or", "how", "after",
        ],
        "skip_words": ["uh"],
    },
    "merge_config": {
        "end_words": [
            "in", "is", "and", "are", "not", "an", "a", "some", "the", "but",
            "our", "for", "of", "if", "his", "her", "my", "noticed", "come",
            "mean", "why", "this", "has", "make", "gpt", "p.m", "a.m",
        ],
        "start_words": [
            "or", "to", "in", "has", "of", "are", "is", "lines", "with",
            "days", "years", "tokens",
        ],
    },
    "end_compatible_configs": [
        {"min_interval": 1000, "min_word_length": 3, "sentence_min_word": 20},
        {"min_interval": 1500, "min_word_length": 1, "sentence_min_word": 20},
    ],
}

LANGS_CONFIG: Dict[str, Dict[str, Any]] = {
    "base": BASE_CONFIG,
    "en": ENGLISH_CONFIG,
}


def primary_subtag(lang_code: Optional[str]) -> str:
    """Return the lower-cased 2-letter part of a code: "en-US" → "en"."""
    normalized = str(lang_code or "").strip().lower().replace("_", "-")
    return normalized.split("-", 1)[0]


def merge_lang_config(lang_code: Optional[str]) -> Dict[str, Any]:
    """Resolve the effective heuristic config for a language.

    WHY: The stabilizer needs one flat config regardless of whether the
    track language is tuned, regional ("en-gb"), or unknown.

    HOW: Deep-copies base, looks up the exact code then the primary
    subtag, and overlays the language entry. Nested dicts present in both
    are merged key by key; everything else is replaced.

    RULES:
    - Returns a fresh dict the caller may modify
    - Unknown or empty codes return a copy of base
    """
    base = copy.deepcopy(LANGS_CONFIG["base"])
    normalized = str(lang_code or "").strip().lower().replace("_", "-")
    extra = LANGS_CONFIG.get(normalized) if normalized != "base" else None
    if extra is None:
        extra = LANGS_CONFIG.get(primary_subtag(normalized)) if normalized else None
    if extra is None:
        return base

    merged = dict(base)
    for key, value in copy.deepcopy(extra).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            merged[key] = {**base[key], **value}
        else:
            merged[key] = value
    return merged
