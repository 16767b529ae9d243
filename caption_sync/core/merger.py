"""Manual-caption sentence merger.

WHY: Manually-authored tracks are usually sentence-like, but many uploads
break one sentence across several short caption lines with no punctuation
("This is a" / "simple test"). Translating each line separately produces
nonsense, so adjacent lines that clearly continue each other are rejoined.

HOW: Start from events_to_simple_cues() (one cue per event), then fold
each cue into the running cue when every merge condition holds. Each
emitted cue gets a fresh id computed from its merged span and text.

RULES:
- Never merges across a terminal-punctuation boundary
- Merging stops at max_chars, max_duration_ms, or a gap >= max_gap_ms
- A merged line that fails normalize_caption_text() is dropped
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

from caption_sync.core.events import events_to_simple_cues
from caption_sync.core.ir import Cue, CueSource
from caption_sync.core.languages import MANUAL_CONTINUATION_START_WORDS
from caption_sync.core.text import (
    count_words,
    has_terminal_punctuation,
    normalize_caption_text,
    normalize_text,
)

DEFAULT_MANUAL_TRACK_KEY = "manual::track"


def starts_like_continuation(text: Optional[str]) -> bool:
    """True if a line opens with a continuation word or a lower-case letter."""
    normalized = normalize_text(text)
    if not normalized:
        return False
    first_word = normalized.split(" ")[0]
    if first_word.lower() in MANUAL_CONTINUATION_START_WORDS:
        return True
    return "a" <= first_word[0] <= "z"


class ManualCaptionSentenceMerger:
    """Rejoins manual caption lines that belong to the same sentence.

    Options are floored: max_gap_ms >= 30, max_chars >= 40,
    max_duration_ms >= 800, short_tail_words >= 1.
    """

    def __init__(
        self,
        max_gap_ms: int = 250,
        max_chars: int = 220,
        max_duration_ms: int = 7000,
        short_tail_words: int = 4,
    ) -> None:
        self.max_gap_ms = max(30, int(max_gap_ms))
        self.max_chars = max(40, int(max_chars))
        self.max_duration_ms = max(800, int(max_duration_ms))
        self.short_tail_words = max(1, int(short_tail_words))

    def should_merge(self, current: Cue, nxt: Cue, current_text: str, joined: str, end_ms: int) -> bool:
        gap_ms = max(0, nxt.start_ms - end_ms)
        duration_ms = max(0, nxt.end_ms - current.start_ms)
        return (
            gap_ms < self.max_gap_ms
            and not has_terminal_punctuation(current_text)
            and (
                starts_like_continuation(nxt.text)
                or count_words(nxt.text) <= self.short_tail_words
            )
            and len(joined) <= self.max_chars
            and duration_ms <= self.max_duration_ms
        )

    def build_cues(
        self,
        events: Iterable[Any],
        track_key: Optional[str] = None,
        source: CueSource | str = CueSource.HOOK,
    ) -> List[Cue]:
        key = str(track_key or DEFAULT_MANUAL_TRACK_KEY)
        src = CueSource.coerce(source)
        base_cues = events_to_simple_cues(events, key, src)
        if len(base_cues) <= 1:
            return base_cues

        merged: List[Cue] = []
        current: Optional[Cue] = None
        text = ""
        end_ms = 0

        def flush() -> None:
            if current is None:
                return
            final_text = normalize_caption_text(text)
            if final_text:
                merged.append(Cue.create(key, current.start_ms, end_ms, final_text, src))

        for cue in base_cues:
            if current is None:
                current, text, end_ms = cue, cue.text, cue.end_ms
                continue

            joined = normalize_text(f"{text} {cue.text}")
            if self.should_merge(current, cue, text, joined, end_ms):
                text = joined
                end_ms = cue.end_ms
                continue

            flush()
            current, text, end_ms = cue, cue.text, cue.end_ms

        flush()
        return merged
