"""Unit tests for the ASR stabilizer pipeline.

WHY: The stabilizer is the most involved transformation in the engine.
Wrong grouping produces untranslatable fragments; non-deterministic ids
re-translate the whole track on every payload.

HOW: Each pipeline stage is tested directly on hand-built tokens, then
AsrStabilizer.build_cues() is tested end to end on the conftest streams:
  - interval and break-word splitting, skip words
  - bounded recursive balancing
  - boundary-word merging and short-tail absorption
  - punctuation routing
  - end-time resolution and the duration floor
  - determinism and malformed input
  - low-confidence window detection

RULES:
- Tokens are rebuilt per test; the pipeline mutates is_break flags
"""

import re

from caption_sync.core.events import FLOOR_DURATION_MS, sanitize_events
from caption_sync.core.ir import Cue, CueSource, TimedToken
from caption_sync.core.languages import DEFAULT_WORDS_REGEX, merge_lang_config
from caption_sync.core.stabilizer import (
    AsrStabilizer,
    break_by_interval,
    early_skip,
    events_to_tokens,
    group_by_terminal_punctuation,
    groups_to_cues,
    is_low_confidence_asr_window,
    merge_groups_by_boundary,
    merge_short_tail_groups,
    normalize_english_artifacts,
    resolve_cue_end,
    split_and_balance,
    token_word_count,
)


def _tokens(*pairs):
    return [TimedToken(start_ms=start, text=text) for start, text in pairs]


def _texts(groups):
    return ["".join(t.text for t in g).strip() for g in groups]


# ---------------------------------------------------------------------------
# Tokenizing
# ---------------------------------------------------------------------------


class TestEventsToTokens:

    def test_space_language_lower_cases_and_sets_event_end(self, asr_word_events):
        tokens = events_to_tokens(sanitize_events(asr_word_events), is_space_lang=True)
        assert [t.text for t in tokens] == ["we", " went", " home", " then", " slept"]
        assert [t.start_ms for t in tokens] == [0, 300, 600, 3000, 3300]
        assert tokens[2].end_ms == 900
        assert tokens[4].end_ms == 3800
        assert tokens[0].end_ms is None

    def test_newline_segment_becomes_leading_space(self):
        events = sanitize_events([{
            "tStartMs": 0,
            "dDurationMs": 500,
            "segs": [{"utf8": "Hello"}, {"utf8": "\n"}, {"utf8": "World", "tOffsetMs": 200}],
        }])
        tokens = events_to_tokens(events, is_space_lang=True)
        assert [t.text for t in tokens] == ["hello", " world"]

    def test_non_space_language_keeps_case(self):
        events = sanitize_events([{"tStartMs": 0, "dDurationMs": 500, "segs": [{"utf8": "ABC"}]}])
        assert events_to_tokens(events, is_space_lang=False)[0].text == "ABC"


class TestNormalizeEnglishArtifacts:

    def test_text_and_order_preserved(self):
        tokens = _tokens((0, "h"), (10, "e"), (20, "y"), (30, " y"), (40, "o"), (50, "u"), (60, "!"))
        tokens[-1].end_ms = 70
        merged = normalize_english_artifacts(tokens)
        assert "".join(t.text for t in merged) == "hey you!"
        assert len(merged) < len(tokens)
        starts = [t.start_ms for t in merged]
        assert starts == sorted(starts)

    def test_non_alpha_tokens_pass_through(self):
        tokens = _tokens((0, "123"), (10, "..."))
        assert [t.text for t in normalize_english_artifacts(tokens)] == ["123", "..."]

    def test_keeps_last_end_of_merged_run(self):
        tokens = _tokens((0, "ok"), (10, "ay"))
        tokens[1].end_ms = 500
        merged = normalize_english_artifacts(tokens)
        assert merged[-1].end_ms == 500


class TestEarlySkip:

    def test_sentence_dense_tokens_skip(self):
        config = {"is_space_lang": True}
        assert early_skip(config, _tokens((0, "this is already a sentence")))

    def test_word_level_tokens_do_not_skip(self):
        config = {"is_space_lang": True}
        assert not early_skip(config, _tokens((0, "we"), (300, " went home")))

    def test_non_space_language_uses_characters(self):
        config = {"is_space_lang": False}
        assert early_skip(config, _tokens((0, "你好世界")))
        assert not early_skip(config, _tokens((0, "你好")))

    def test_only_first_twenty_tokens_count(self):
        config = {"is_space_lang": True}
        tokens = _tokens(*[(i, " w") for i in range(20)]) + _tokens((99, "a b c d"))
        assert not early_skip(config, tokens)


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


class TestBreakByInterval:

    def test_pause_starts_new_group(self):
        tokens = _tokens((0, "alpha"), (200, " beta"), (400, " gamma"), (2000, " delta"), (2200, " epsilon"))
        groups = break_by_interval(tokens, {"min_interval": 1000})
        assert _texts(groups) == ["alpha beta gamma", "delta epsilon"]

    def test_break_word_after_mini_time(self):
        tokens = _tokens((0, "we"), (200, " went"), (400, " home"), (900, " and"), (1100, " slept"))
        groups = break_by_interval(tokens, {
            "break_words": ["and"],
            "min_interval": 1000,
            "break_mini_time": 300,
        })
        assert _texts(groups) == ["we went home", "and slept"]
        assert groups[1][0].is_break is True

    def test_break_phrase_spans_two_tokens(self):
        tokens = _tokens((0, "right"), (200, " now"), (800, " i"), (900, " mean"), (1000, " really"))
        groups = break_by_interval(tokens, {
            "break_words": ["i mean"],
            "min_interval": 1000,
            "break_mini_time": 300,
        })
        assert _texts(groups) == ["right now", "i mean really"]

    def test_break_word_too_soon_is_ignored(self):
        tokens = _tokens((0, "we"), (100, " and"), (200, " they"))
        groups = break_by_interval(tokens, {"break_words": ["and"], "break_mini_time": 300})
        assert len(groups) == 1

    def test_skip_word_dropped(self):
        tokens = _tokens((0, "i"), (200, " uh"), (400, " think"))
        groups = break_by_interval(tokens, {"skip_words": ["uh"], "min_interval": 1000})
        assert _texts(groups) == ["i think"]

    def test_empty_input(self):
        assert break_by_interval([], {}) == []


class TestSplitAndBalance:

    def test_long_group_resplit_at_tighter_interval(self):
        # 20 words at 100 ms, a 600 ms pause, 20 more words
        first = [(i * 100, " a") for i in range(20)]
        second = [(2500 + i * 100, " b") for i in range(20)]
        groups = split_and_balance(_tokens(*(first + second)), {"min_interval": 1000, "max_words": 25})
        assert len(groups) == 2
        assert token_word_count(groups[0]) == 20

    def test_depth_cap_emits_group_unchanged(self):
        tokens = _tokens(*[(i * 10, " w") for i in range(40)])
        groups = split_and_balance(tokens, {"min_interval": 1000, "max_words": 5}, max_depth=3)
        assert sum(len(g) for g in groups) == 40

    def test_all_single_character_input_terminates(self):
        tokens = _tokens(*[(i, " x") for i in range(500)])
        groups = split_and_balance(tokens, {"min_interval": 1000, "max_words": 2})
        assert sum(len(g) for g in groups) == 500

    def test_consecutive_single_word_groups_coalesced(self):
        tokens = _tokens((0, "one"), (2000, " two"), (4000, " three"))
        groups = split_and_balance(tokens, {"min_interval": 1000, "max_words": 15})
        assert _texts(groups) == ["one two three"]


class TestMergeGroupsByBoundary:

    def test_merges_after_end_word(self):
        groups = [_tokens((0, "i saw"), (300, " the")), _tokens((900, " cat"))]
        merged = merge_groups_by_boundary(groups, {"end_words": ["the"], "min_interval": 1000})
        assert _texts(merged) == ["i saw the cat"]

    def test_merges_before_start_word(self):
        groups = [_tokens((0, "we want")), _tokens((500, " to"), (700, " go"))]
        merged = merge_groups_by_boundary(groups, {"start_words": ["to"], "min_interval": 1000})
        assert _texts(merged) == ["we want to go"]

    def test_gap_too_large(self):
        groups = [_tokens((0, "i saw"), (300, " the")), _tokens((5000, " cat"))]
        merged = merge_groups_by_boundary(groups, {"end_words": ["the"], "min_interval": 1000})
        assert len(merged) == 2

    def test_never_merges_explicit_break(self):
        head = _tokens((900, " cat"))
        head[0].is_break = True
        groups = [_tokens((0, "i saw"), (300, " the")), head]
        merged = merge_groups_by_boundary(groups, {"end_words": ["the"], "min_interval": 1000})
        assert len(merged) == 2

    def test_respects_max_words(self):
        groups = [_tokens((0, "one two the")), _tokens((300, " four five"))]
        merged = merge_groups_by_boundary(groups, {"end_words": ["the"], "max_words": 4})
        assert len(merged) == 2

    def test_no_word_lists_returns_input(self):
        groups = [_tokens((0, "a")), _tokens((10, " b"))]
        assert merge_groups_by_boundary(groups, {}) is groups


class TestMergeShortTailGroups:

    def test_folds_short_tail(self):
        groups = [_tokens((0, "a"), (100, " b"), (200, " c")), _tokens((500, " d"))]
        out = merge_short_tail_groups(groups, {"min_interval": 1000, "min_word_length": 1, "sentence_min_word": 20})
        assert _texts(out) == ["a b c d"]

    def test_chain_collapses_back_to_front(self):
        groups = [_tokens((0, "a"), (100, " b")), _tokens((300, " c")), _tokens((600, " d"))]
        out = merge_short_tail_groups(groups, {"min_interval": 1000, "min_word_length": 2, "sentence_min_word": 20})
        assert _texts(out) == ["a b c d"]

    def test_keeps_break_group(self):
        tail = _tokens((500, " so"))
        tail[0].is_break = True
        groups = [_tokens((0, "a"), (100, " b")), tail]
        out = merge_short_tail_groups(groups, {"min_interval": 1000, "min_word_length": 1})
        assert len(out) == 2

    def test_keeps_distant_tail(self):
        groups = [_tokens((0, "a"), (100, " b")), _tokens((5000, " c"))]
        out = merge_short_tail_groups(groups, {"min_interval": 1000, "min_word_length": 1})
        assert len(out) == 2


class TestPunctuationRouting:

    def test_needs_ten_punctuated_tokens(self):
        pattern = re.compile(DEFAULT_WORDS_REGEX)
        tokens = _tokens(*[(i * 100, " ok.") for i in range(9)])
        assert group_by_terminal_punctuation(tokens, pattern) is None

    def test_splits_at_sentence_ends(self):
        pattern = re.compile(DEFAULT_WORDS_REGEX)
        tokens = _tokens(*[(i * 100, " ok.") for i in range(10)]) + _tokens((2000, " tail"))
        groups = group_by_terminal_punctuation(tokens, pattern)
        assert len(groups) == 11
        assert _texts(groups)[-1] == "tail"

    def test_abbreviation_does_not_close_group(self):
        pattern = re.compile(DEFAULT_WORDS_REGEX)
        tokens = _tokens(*[(i * 100, " ok.") for i in range(10)]) + _tokens((2000, " Dr."), (2100, " Smith."))
        groups = group_by_terminal_punctuation(tokens, pattern)
        assert _texts(groups)[-1] == "Dr. Smith."


# ---------------------------------------------------------------------------
# Materializing
# ---------------------------------------------------------------------------


class TestCueEnds:

    def test_explicit_end_clipped_to_next_start(self):
        group = _tokens((0, "a"))
        group[-1].end_ms = 5000
        assert resolve_cue_end(group, _tokens((4000, " b"))) == 4000

    def test_explicit_end_used_when_earlier(self):
        group = _tokens((0, "a"))
        group[-1].end_ms = 3000
        assert resolve_cue_end(group, _tokens((4000, " b"))) == 3000

    def test_missing_end_uses_next_start(self):
        assert resolve_cue_end(_tokens((0, "a")), _tokens((4000, " b"))) == 4000

    def test_floor_applied_when_no_end(self):
        cues = groups_to_cues([_tokens((1000, "lonely words"))], "t", CueSource.HOOK)
        assert cues[0].end_ms == 1000 + FLOOR_DURATION_MS

    def test_blank_group_produces_no_cue(self):
        assert groups_to_cues([_tokens((0, "\n"))], "t", "hook") == []


# ---------------------------------------------------------------------------
# AsrStabilizer
# ---------------------------------------------------------------------------


class TestAsrStabilizer:

    def test_sanitize_scenario(self, noisy_events):
        cues = AsrStabilizer().build_cues(noisy_events, "en", "en::asr::")
        assert [c.text for c in cues] == ["hello world"]

    def test_unpunctuated_stream(self, asr_word_events):
        cues = AsrStabilizer().build_cues(asr_word_events, "en")
        assert [c.text for c in cues] == ["we went home", "then slept"]
        assert [(c.start_ms, c.end_ms) for c in cues] == [(0, 900), (3000, 3800)]
        assert cues[0].cue_id.startswith("yt:en::asr:0:900:")
        assert cues[0].track_key == "en::asr"

    def test_punctuated_stream(self, asr_punctuated_events):
        cues = AsrStabilizer().build_cues(asr_punctuated_events, "en-US", "k")
        assert len(cues) == 12
        assert all(c.text == "hello there." for c in cues)
        assert (cues[0].start_ms, cues[0].end_ms) == (0, 900)
        assert (cues[-1].start_ms, cues[-1].end_ms) == (11000, 11900)

    def test_deterministic_ids(self, asr_word_events, asr_punctuated_events):
        stabilizer = AsrStabilizer()
        for events in (asr_word_events, asr_punctuated_events):
            first = [c.cue_id for c in stabilizer.build_cues(events, "en", "k")]
            second = [c.cue_id for c in stabilizer.build_cues(events, "en", "k")]
            assert first == second
            assert first

    def test_input_events_not_mutated(self, asr_word_events):
        snapshot = [dict(e) for e in asr_word_events]
        AsrStabilizer().build_cues(asr_word_events, "en")
        assert asr_word_events == snapshot

    def test_growing_stream_keeps_settled_ids(self, asr_word_events):
        stabilizer = AsrStabilizer()
        before = stabilizer.build_cues(asr_word_events, "en", "k")
        grown = asr_word_events + [{
            "tStartMs": 8000,
            "dDurationMs": 700,
            "segs": [{"utf8": " later"}, {"utf8": " on", "tOffsetMs": 300}],
        }]
        after = stabilizer.build_cues(grown, "en", "k")
        assert before[0].cue_id == after[0].cue_id

    def test_sentence_dense_payload_skipped(self):
        events = [{"tStartMs": 0, "dDurationMs": 3000, "segs": [{"utf8": "this is a whole sentence"}]}]
        assert AsrStabilizer().build_cues(events, "en") == []

    def test_unknown_language_still_produces_cues(self):
        events = [{"tStartMs": 0, "dDurationMs": 900, "segs": [{"utf8": "ab"}, {"utf8": "cd", "tOffsetMs": 300}]}]
        cues = AsrStabilizer().build_cues(events, "xx")
        assert [c.text for c in cues] == ["abcd"]

    def test_malformed_input_yields_empty(self):
        stabilizer = AsrStabilizer()
        assert stabilizer.build_cues(None, "en") == []
        assert stabilizer.build_cues("events", "en") == []
        assert stabilizer.build_cues([{"foo": 1}, None], "en") == []
        assert stabilizer.build_cues([], "en") == []

    def test_invalid_abbreviation_pattern_falls_back(self):
        stabilizer = AsrStabilizer(words_regex="(")
        assert stabilizer.terminal_word_re.pattern == DEFAULT_WORDS_REGEX

    def test_source_passed_through(self, asr_word_events):
        cues = AsrStabilizer().build_cues(asr_word_events, "en", "k", "dom")
        assert all(c.source is CueSource.DOM for c in cues)

    def test_uses_english_config_for_region(self):
        assert merge_lang_config("en-AU")["is_space_lang"] is True


# ---------------------------------------------------------------------------
# Low-confidence detection
# ---------------------------------------------------------------------------


class TestLowConfidenceWindow:

    def test_over_segmented_stream_flagged(self):
        cues = [Cue.create("t", i * 520, i * 520 + 500, "word word") for i in range(10)]
        assert all(c.confidence < 0.4 for c in cues)
        assert is_low_confidence_asr_window(cues) is True

    def test_well_punctuated_stream_not_flagged(self):
        cues = [
            Cue.create("t", 0, 2500, "This is a complete sentence."),
            Cue.create("t", 3000, 5500, "Here is another one as well."),
            Cue.create("t", 6000, 8500, "And this one ends the thought."),
        ]
        assert is_low_confidence_asr_window(cues) is False

    def test_empty_is_not_flagged(self):
        assert is_low_confidence_asr_window([]) is False
