"""DOM-text fallback committer.

WHY: When the caption event stream cannot be captured (request never seen,
repeated parse errors), the only signal left is the caption text visible on
screen. That text grows word by word, flickers, and repeats. This module
turns those snapshots into the same Cue shape the hook producers emit, so
the queue and render policy work unchanged.

HOW: One WindowState per caption window. Each snapshot either opens the
window, grows it (prefix extension), or replaces it. Replacement makes the
old text a commit candidate. Otherwise a window commits when its text ends
in terminal punctuation, has been quiet for quiet_ms, or has been held for
force_ms. A bounded history suppresses re-committing the same text within
dedupe_ttl_ms.

RULES:
- Cue start times per window never go backwards: start = max(video, last_end)
- Every committed cue spans COMMIT_SPAN_MS
- Empty window keys and non-caption text are ignored
- History is capped at max_history, oldest evicted first
"""

from __future__ import annotations

import logging
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from caption_sync.core.ir import Cue, CueSource
from caption_sync.core.text import count_words, normalize_caption_text, normalize_text

logger = logging.getLogger(__name__)

COMMIT_SPAN_MS = 2200

_COMMIT_PUNCT_RE = re.compile(r"[.?!。？！]$")


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class WindowState:
    """Commit bookkeeping for one caption window."""

    current_text: str
    first_seen_at: int
    last_changed_at: int
    last_end_ms: int
    last_committed_text: str = ""
    last_committed_at: int = 0


class DomFallbackCommitter:
    """Commits visible caption text into cues.

    Options are floored: quiet_ms >= 100, force_ms >= quiet_ms,
    min_words >= 1, min_chars >= 1, dedupe_ttl_ms >= 1000, max_history >= 10.
    """

    def __init__(
        self,
        quiet_ms: int = 700,
        force_ms: int = 1800,
        min_words: int = 2,
        min_chars: int = 8,
        dedupe_ttl_ms: int = 12000,
        max_history: int = 160,
    ) -> None:
        self.quiet_ms = max(100, int(quiet_ms))
        self.force_ms = max(self.quiet_ms, int(force_ms))
        self.min_words = max(1, int(min_words))
        self.min_chars = max(1, int(min_chars))
        self.dedupe_ttl_ms = max(1000, int(dedupe_ttl_ms))
        self.max_history = max(10, int(max_history))
        self.states: Dict[str, WindowState] = {}
        self.history: "OrderedDict[str, int]" = OrderedDict()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def ingest(
        self,
        window_key: Optional[str],
        raw_text: Optional[str],
        video_ms: Optional[int] = None,
        now: Optional[int] = None,
    ) -> Optional[Cue]:
        """Feed one snapshot of a window's visible text.

        Returns a committed cue, or None if nothing is ready yet.
        """
        key = str(window_key or "").strip()
        if not key:
            return None

        now = _now_ms() if now is None else int(now)
        video = max(0, int(video_ms or 0))
        text = normalize_caption_text(raw_text)
        if not text:
            return None

        state = self.states.get(key)
        if state is None:
            state = WindowState(
                current_text=text,
                first_seen_at=now,
                last_changed_at=now,
                last_end_ms=video,
            )
            self.states[key] = state
        elif state.current_text != text:
            previous = state.current_text
            growing = text.startswith(previous)

            if not growing and self.can_commit_text(previous):
                cue = self._commit(key, state, previous, video, now)
                state.current_text = text
                state.first_seen_at = now
                state.last_changed_at = now
                if cue is not None:
                    return cue
            else:
                state.current_text = text
                state.last_changed_at = now
                if not growing:
                    state.first_seen_at = now

        if self.should_commit(state, now):
            return self._commit(key, state, state.current_text, video, now)
        return None

    def flush(self, video_ms: Optional[int] = None, now: Optional[int] = None) -> List[Cue]:
        """Commit every window that is due, e.g. on a timer while text sits still."""
        now = _now_ms() if now is None else int(now)
        video = max(0, int(video_ms or 0))
        commits: List[Cue] = []
        for key, state in list(self.states.items()):
            if not state.current_text or not self.should_commit(state, now):
                continue
            cue = self._commit(key, state, state.current_text, video, now)
            if cue is not None:
                commits.append(cue)
        return commits

    def drop_missing_windows(self, valid_ids: Iterable[str]) -> None:
        """Forget windows that are no longer on screen."""
        valid = set(valid_ids or ())
        for key in list(self.states):
            if key not in valid:
                del self.states[key]

    def reset(self) -> None:
        self.states.clear()
        self.history.clear()

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def can_commit_text(self, text: Optional[str]) -> bool:
        normalized = normalize_text(text)
        if not normalized or len(normalized) < self.min_chars:
            return False
        return count_words(normalized) >= self.min_words

    def should_commit(self, state: WindowState, now: int) -> bool:
        text = normalize_text(state.current_text)
        if not self.can_commit_text(text):
            return False
        if _COMMIT_PUNCT_RE.search(text):
            return True
        if now - state.last_changed_at >= self.quiet_ms:
            return True
        return now - state.first_seen_at >= self.force_ms

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _commit(self, key: str, state: WindowState, text: str, video_ms: int, now: int) -> Optional[Cue]:
        normalized = normalize_text(text)
        if not self.can_commit_text(normalized):
            return None

        self._prune_history(now)
        history_key = f"{key}::{normalized}"
        seen_at = self.history.get(history_key)
        if seen_at is not None and now - seen_at < self.dedupe_ttl_ms:
            state.first_seen_at = now
            state.last_changed_at = now
            logger.debug("Suppressed repeated caption text in window %s", key)
            return None

        state.first_seen_at = now
        state.last_changed_at = now
        state.last_committed_text = normalized
        state.last_committed_at = now

        start_ms = max(video_ms, state.last_end_ms)
        end_ms = start_ms + COMMIT_SPAN_MS
        state.last_end_ms = end_ms

        self.history[history_key] = now
        self.history.move_to_end(history_key)
        while len(self.history) > self.max_history:
            self.history.popitem(last=False)

        return Cue.create(f"dom:{key}", start_ms, end_ms, normalized, CueSource.DOM, window_id=key)

    def _prune_history(self, now: int) -> None:
        for history_key, committed_at in list(self.history.items()):
            if now - committed_at > self.dedupe_ttl_ms:
                del self.history[history_key]
