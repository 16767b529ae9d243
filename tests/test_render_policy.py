"""Unit tests for cue selection and the anti-flicker display hold.

WHY: The render tick runs several times a second. A wrong selection shows
the wrong sentence; a wrong hold makes the overlay blink between cues or
linger after a seek.

RULES:
- Every call passes now explicitly; nothing depends on the wall clock
"""

from unittest.mock import MagicMock

import pytest

from caption_sync.core.render_policy import (
    WINDOW_MATCH_MS,
    PlaybackSnapshot,
    RenderFrame,
    RenderState,
    TailHoldSelector,
    cue_text_similarity,
    is_seek_discontinuity,
    proximity_score,
    resolve_render_text,
    resolve_render_text_with_playback,
    select_active_cue,
    select_cue_by_time_and_text,
)
from conftest import make_cue


class TestSelectActiveCue:

    def test_cue_containing_time(self, two_cues):
        a, b = two_cues
        assert select_active_cue(two_cues, 1500) is a
        assert select_active_cue(two_cues, 2500) is b

    def test_short_tail_hold(self, two_cues):
        assert select_active_cue(two_cues, 3600) is two_cues[1]

    def test_gap_between_cues_holds_previous(self, two_cues):
        assert select_active_cue(two_cues, 2100) is two_cues[0]

    def test_too_late(self, two_cues):
        assert select_active_cue(two_cues, 7000) is None

    def test_before_first_cue(self, two_cues):
        assert select_active_cue(two_cues, 500) is None

    def test_empty(self):
        assert select_active_cue([], 1000) is None

    def test_tail_hold_selector_delegates(self, two_cues):
        assert TailHoldSelector().select(two_cues, 2500) is two_cues[1]


class TestScoring:

    def test_similarity(self):
        assert cue_text_similarity("hello world", "hello there") == pytest.approx(1 / 3)
        assert cue_text_similarity("Hello, World!", "hello world") == pytest.approx(1.0)
        assert cue_text_similarity("", "hello") == 0.0
        assert cue_text_similarity(None, None) == 0.0

    def test_proximity(self):
        cue = make_cue(1000, 2000)
        assert proximity_score(cue, 1500) == 1.0
        assert proximity_score(cue, 2000 + WINDOW_MATCH_MS // 2) == pytest.approx(0.5)
        assert proximity_score(cue, 1000 - WINDOW_MATCH_MS) == 0.0


class TestSelectCueByTimeAndText:

    def test_window_text_disambiguates_overlap(self):
        a = make_cue(1000, 4000, "the quick brown fox")
        b = make_cue(2000, 5000, "jumps over the lazy dog")
        assert select_cue_by_time_and_text([a, b], 3000, "jumps over the lazy dog") is b
        assert select_cue_by_time_and_text([a, b], 3000, "the quick brown fox") is a

    def test_tie_keeps_list_order(self):
        a = make_cue(1000, 4000, "the quick brown fox")
        b = make_cue(2000, 5000, "jumps over the lazy dog")
        assert a.confidence == b.confidence
        assert select_cue_by_time_and_text([a, b], 3000) is a

    def test_nearby_cue_preferred_over_nothing(self):
        cue = make_cue(10_000, 11_000, "soon to be shown")
        assert select_cue_by_time_and_text([cue], 8000) is cue

    def test_falls_back_to_selector(self):
        cue = make_cue(1000, 2000)
        selector = MagicMock()
        selector.select.return_value = None
        assert select_cue_by_time_and_text([cue], 60_000, selector=selector) is None
        selector.select.assert_called_once_with([cue], 60_000)

    def test_empty(self):
        assert select_cue_by_time_and_text([], 1000) is None


class TestResolveRenderText:

    def test_shows_text_and_restarts_clock(self):
        result = resolve_render_text("Hello there", None, now=1000)
        assert result.text == "Hello there"
        assert result.state == RenderState("Hello there", 1000)

    def test_hold_boundary(self):
        state = RenderState("Hello there", 1000)
        assert resolve_render_text("", state, now=1900, hold_ms=900).text == "Hello there"
        assert resolve_render_text("", state, now=1901, hold_ms=900).text == ""

    @pytest.mark.parametrize("elapsed", [0, 1, 450, 899, 900, 901, 5000])
    def test_hold_iff_within_window(self, elapsed):
        state = RenderState("held", 10_000)
        result = resolve_render_text("", state, now=10_000 + elapsed, hold_ms=900)
        assert (result.text == "held") == (elapsed <= 900)

    def test_hold_keeps_original_shown_time(self):
        state = RenderState("Hello there", 1000)
        result = resolve_render_text(None, state, now=1500)
        assert result.state.last_shown_at == 1000

    def test_cleared_state_after_expiry(self):
        result = resolve_render_text("", RenderState("old", 0), now=10_000)
        assert result.state == RenderState()

    def test_does_not_mutate_previous_state(self):
        state = RenderState("old", 0)
        resolve_render_text("new", state, now=10)
        assert state == RenderState("old", 0)


class TestPlaybackAwareHold:

    def test_seek_clears_immediately(self):
        state = RenderState("Hello there", 1000)
        result = resolve_render_text_with_playback(
            "", state, PlaybackSnapshot(20_000), PlaybackSnapshot(10_000), now=1100,
        )
        assert result.text == ""

    def test_small_advance_keeps_hold(self):
        state = RenderState("Hello there", 1000)
        result = resolve_render_text_with_playback(
            "", state, PlaybackSnapshot(10_120), PlaybackSnapshot(10_000), now=1100,
        )
        assert result.text == "Hello there"

    def test_paused_holds_indefinitely(self):
        state = RenderState("Hello there", 1000)
        result = resolve_render_text_with_playback(
            "", state, PlaybackSnapshot(5000, paused=True), PlaybackSnapshot(5000, paused=True), now=100_000,
        )
        assert result.text == "Hello there"

    def test_new_text_always_shown(self):
        result = resolve_render_text_with_playback(
            "Fresh line", None, PlaybackSnapshot(20_000), PlaybackSnapshot(0), now=5,
        )
        assert result.text == "Fresh line"

    def test_seek_threshold(self):
        assert not is_seek_discontinuity(None, PlaybackSnapshot(5000))
        assert not is_seek_discontinuity(PlaybackSnapshot(0), PlaybackSnapshot(1500))
        assert is_seek_discontinuity(PlaybackSnapshot(0), PlaybackSnapshot(1501))
        assert is_seek_discontinuity(PlaybackSnapshot(5000), PlaybackSnapshot(0))


class TestRenderFrame:

    def test_empty_frame(self):
        assert RenderFrame().is_empty
        assert not RenderFrame(original="x").is_empty
