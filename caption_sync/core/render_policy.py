"""Render policy: which cue to show, and anti-flicker hold of the display.

WHY: The playback clock is polled on a fixed tick while cue spans have small
gaps between them, overlap after re-stabilization, and jump on seek. Picking
"the cue containing now" and showing "" otherwise blinks the overlay between
every pair of adjacent cues.

HOW: Two independent steps, both pure:
  1. Selection — select_cue_by_time_and_text() scores cues by temporal
     proximity, similarity to the on-screen caption text (when known), and
     cue confidence. If nothing is near enough it defers to an
     ActiveCueSelector strategy (TailHoldSelector by default).
  2. Display  — resolve_render_text() keeps the last non-empty text for
     hold_ms after the source goes empty. The playback-aware variant clears
     on seek and never expires while paused.

RULES:
- No function here mutates its inputs; new RenderState values are returned
- Ties in scoring keep the first cue in list order
- now and video times are integer milliseconds
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence, Set

from caption_sync.core.ir import Cue
from caption_sync.core.text import normalize_text

DEFAULT_HOLD_MS = 900
WINDOW_MATCH_MS = 6000
TAIL_HOLD_MS = 2500
SEEK_THRESHOLD_MS = 1500

_TOKEN_SPLIT_RE = re.compile(
    r"[^a-z0-9\u00c0-\u024f\u0400-\u04ff\u3040-\u30ff\u3400-\u9fff]+"
)


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class RenderState:
    """What a display line last showed and when (ms)."""

    last_text: str = ""
    last_shown_at: int = 0


@dataclass(frozen=True)
class RenderResult:
    text: str
    state: RenderState


@dataclass(frozen=True)
class PlaybackSnapshot:
    """One reading of the playback clock."""

    video_ms: int
    paused: bool = False


@dataclass(frozen=True)
class RenderFrame:
    """The (original, translated) pair to display for one render tick.

    Both empty means "show nothing". cue_id is the selected cue, which may
    be set while both lines are empty (hook mode waiting on a translation).
    """

    original: str = ""
    translated: str = ""
    cue_id: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.original and not self.translated


class ActiveCueSelector(Protocol):
    """Strategy used when no cue scores positively by time and text."""

    def select(self, cues: Sequence[Cue], video_ms: int) -> Optional[Cue]:
        ...


# =============================================================================
# Selection
# =============================================================================


def _tokenize(text: Optional[str]) -> Set[str]:
    return {t for t in _TOKEN_SPLIT_RE.split(normalize_text(text).lower()) if t}


def cue_text_similarity(left: Optional[str], right: Optional[str]) -> float:
    """Jaccard similarity of the two texts' token sets, in [0, 1]."""
    left_tokens = _tokenize(left)
    right_tokens = _tokenize(right)
    if not left_tokens or not right_tokens:
        return 0.0
    intersection = len(left_tokens & right_tokens)
    union = len(left_tokens) + len(right_tokens) - intersection
    return intersection / union if union else 0.0


def proximity_score(cue: Cue, video_ms: int) -> float:
    """1.0 inside the cue span, decaying linearly to 0 over WINDOW_MATCH_MS."""
    if cue.start_ms <= video_ms <= cue.end_ms:
        return 1.0
    distance = cue.start_ms - video_ms if video_ms < cue.start_ms else video_ms - cue.end_ms
    if distance >= WINDOW_MATCH_MS:
        return 0.0
    return 1.0 - distance / WINDOW_MATCH_MS


def select_active_cue(cues: Sequence[Cue], video_ms: int) -> Optional[Cue]:
    """Pure time-based selection.

    The first cue whose span contains video_ms wins. Otherwise the
    latest-starting cue that has already begun is kept on screen for up to
    TAIL_HOLD_MS after its end.
    """
    last_past: Optional[Cue] = None
    for cue in cues or ():
        if cue.start_ms <= video_ms <= cue.end_ms:
            return cue
        if cue.start_ms <= video_ms and (last_past is None or cue.start_ms > last_past.start_ms):
            last_past = cue

    if last_past is not None and video_ms - last_past.end_ms <= TAIL_HOLD_MS:
        return last_past
    return None


class TailHoldSelector:
    """Default ActiveCueSelector backed by select_active_cue()."""

    def select(self, cues: Sequence[Cue], video_ms: int) -> Optional[Cue]:
        return select_active_cue(cues, video_ms)


def select_cue_by_time_and_text(
    cues: Sequence[Cue],
    video_ms: int,
    window_text: Optional[str] = None,
    selector: Optional[ActiveCueSelector] = None,
) -> Optional[Cue]:
    """Pick the cue that best matches the playback time and on-screen text.

    WHY: After re-stabilization several cues may overlap the same instant.
    When the platform's own caption text is visible it disambiguates which
    of them the viewer is actually seeing.

    HOW: score = 2 * proximity + 2 * similarity + 0.5 * confidence, over
    cues with proximity > 0. Similarity is 0 without window_text.

    RULES:
    - Empty cue list → None
    - No positive proximity → selector.select() (TailHoldSelector if None)
    """
    items = list(cues or ())
    if not items:
        return None

    hint = normalize_text(window_text)
    best: Optional[Cue] = None
    best_score = -1.0
    for cue in items:
        proximity = proximity_score(cue, video_ms)
        if proximity <= 0:
            continue
        similarity = cue_text_similarity(hint, cue.text) if hint else 0.0
        score = proximity * 2 + similarity * 2 + float(cue.confidence or 0) * 0.5
        if score > best_score:
            best_score = score
            best = cue

    if best is not None:
        return best
    return (selector or TailHoldSelector()).select(items, video_ms)


# =============================================================================
# Display hold
# =============================================================================


def _now_ms() -> int:
    return int(time.time() * 1000)


def resolve_render_text(
    text: Optional[str],
    prev_state: Optional[RenderState] = None,
    now: Optional[int] = None,
    hold_ms: int = DEFAULT_HOLD_MS,
) -> RenderResult:
    """Apply the anti-flicker hold to one display line.

    Non-empty text is shown and restarts the hold clock. Empty text keeps
    the previous text while now - last_shown_at <= hold_ms, else clears.
    """
    now = _now_ms() if now is None else int(now)
    hold = max(0, int(hold_ms))
    state = prev_state or RenderState()

    current = normalize_text(text)
    if current:
        return RenderResult(current, RenderState(current, now))

    last_text = normalize_text(state.last_text)
    if last_text and now - state.last_shown_at <= hold:
        return RenderResult(last_text, RenderState(last_text, state.last_shown_at))

    return RenderResult("", RenderState())


def is_seek_discontinuity(previous: Optional[PlaybackSnapshot], current: PlaybackSnapshot) -> bool:
    if previous is None:
        return False
    return abs(current.video_ms - previous.video_ms) > SEEK_THRESHOLD_MS


def resolve_render_text_with_playback(
    text: Optional[str],
    prev_state: Optional[RenderState],
    playback: PlaybackSnapshot,
    prev_playback: Optional[PlaybackSnapshot] = None,
    now: Optional[int] = None,
    hold_ms: int = DEFAULT_HOLD_MS,
) -> RenderResult:
    """resolve_render_text() aware of seeks and pauses.

    RULES:
    - Non-empty text is always shown
    - A jump of more than SEEK_THRESHOLD_MS since prev_playback clears the
      held text at once
    - While paused the previous text is held with no expiry
    """
    if normalize_text(text):
        return resolve_render_text(text, prev_state, now, hold_ms)

    if is_seek_discontinuity(prev_playback, playback):
        return resolve_render_text("", None, now, hold_ms)

    if playback.paused and prev_state is not None and normalize_text(prev_state.last_text):
        held = normalize_text(prev_state.last_text)
        shown_at = prev_state.last_shown_at or (_now_ms() if now is None else int(now))
        return RenderResult(held, RenderState(held, shown_at))

    return resolve_render_text("", prev_state, now, hold_ms)
