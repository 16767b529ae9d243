"""ASR stream stabilizer: timed events → tokens → groups → sentence cues.

WHY: Automatic captions arrive as word-level (sometimes character-level)
fragments with no punctuation and unreliable spacing. Showing and
translating them fragment by fragment flickers and produces poor
translations. This module regroups them into sentence-sized cues whose ids
stay stable while the stream keeps growing.

HOW: A fixed pipeline over a flat token list:
  1. sanitize_events()              — drop malformed/append events, sort
  2. events_to_tokens()             — flatten segments, re-merge raw characters
  3. early_skip()                   — bail out on payloads that are not word-level
  4. group_by_terminal_punctuation()— route clearly punctuated ASR
  5. break_by_interval()            — split on break words and pauses
  6. split_and_balance()            — cap words per group, bounded recursion
  7. merge_groups_by_boundary()     — rejoin on continuation words
  8. merge_short_tail_groups()      — absorb dangling short groups
  9. groups_to_cues()               — end times, text, ids, confidence
Per-language tables come from core.languages.

RULES:
- build_cues() is pure: same input, same cue ids, byte for byte
- Malformed or empty input yields [], never an exception
- Tokens are created fresh per call; input events are never mutated
- A group produced by an explicit break word is never folded back
- Recursion in step 6 stops at max_split_depth and emits the group as-is
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Sequence

from caption_sync.core.events import FLOOR_DURATION_MS, sanitize_events
from caption_sync.core.ir import Cue, CueSource, TimedEvent, TimedToken
from caption_sync.core.languages import DEFAULT_WORDS_REGEX, merge_lang_config
from caption_sync.core.text import has_terminal_punctuation, normalize_text

logger = logging.getLogger(__name__)

Group = List[TimedToken]

_ALPHA_RE = re.compile(r"[a-z]", re.IGNORECASE)
_WORD_LIKE_RE = re.compile(r"^[a-z'.]+\s*[a-z'.]+$", re.IGNORECASE)
_WORD_TAIL_RE = re.compile(r"\b[a-z.']+$", re.IGNORECASE)
_NON_ALPHA_START_RE = re.compile(r"^[^a-z]", re.IGNORECASE)
_SENTENCE_PUNCT_RE = re.compile(r"[.?!。？！]")

EARLY_SKIP_TOKENS = 20
MIN_PUNCTUATED_TOKENS = 10
DEFAULT_MAX_EVENTS = 6000
DEFAULT_MAX_SPLIT_DEPTH = 32


# =============================================================================
# Tokenizing
# =============================================================================


def events_to_tokens(events: Sequence[TimedEvent], is_space_lang: bool) -> List[TimedToken]:
    """Flatten sanitized events into timed tokens.

    WHY: Grouping decisions are per token, but timing and duration live on
    events and segments.

    HOW: One token per non-empty segment. For space-delimited languages a
    bare "\\n" segment becomes a leading space on the next token and all
    text is lower-cased. The last token of each event gets the event's end
    as its explicit end_ms.

    RULES:
    - If no more than 10% of events carried an ASCII letter, the tokens are
      raw characters and are re-merged by normalize_english_artifacts()
    """
    out: List[TimedToken] = []
    ascii_count = 0
    pending_space = ""

    for event in events:
        added = False
        for seg in event.segments:
            raw = seg.text
            if not raw:
                continue

            if is_space_lang:
                if raw == "\n":
                    pending_space = " "
                    continue
                if _ALPHA_RE.search(raw):
                    ascii_count += 1
                out.append(TimedToken(start_ms=seg.start_ms, text=(pending_space + raw).lower()))
                pending_space = ""
            else:
                out.append(TimedToken(start_ms=seg.start_ms, text=raw))
            added = True

        if added and event.duration_ms is not None:
            out[-1].end_ms = event.start_ms + event.duration_ms

    if is_space_lang and ascii_count <= len(events) * 0.1:
        return normalize_english_artifacts(out)
    return out


def normalize_english_artifacts(tokens: Sequence[TimedToken]) -> List[TimedToken]:
    """Re-merge runs of alphabetic fragments into whole words.

    A run keeps growing while tokens look like word pieces; a token that
    carries letters but starts with a non-letter (typically " x") opens a
    new run. Non-alphabetic tokens pass through untouched.
    """
    out: List[TimedToken] = []
    buffer: List[TimedToken] = []

    def flush() -> None:
        if not buffer:
            return
        out.append(TimedToken(
            start_ms=buffer[0].start_ms,
            text="".join(t.text for t in buffer),
            end_ms=buffer[-1].end_ms,
        ))
        buffer.clear()

    for token in tokens:
        text = token.text
        has_alpha = bool(_ALPHA_RE.search(text))
        consumed = False

        if has_alpha:
            buffer.append(token)
            consumed = True

        looks_word = bool(_WORD_LIKE_RE.match(text)) or (
            len(buffer) == 1 and bool(_WORD_TAIL_RE.search(text))
        )
        # "..." matches the word shape but was never buffered
        if looks_word and consumed:
            continue

        if has_alpha and _NON_ALPHA_START_RE.match(text):
            buffer.pop()
            flush()
            buffer.append(token)
            continue

        flush()
        if not consumed:
            out.append(token)

    flush()
    return out


def early_skip(config: Dict[str, Any], tokens: Sequence[TimedToken]) -> bool:
    """True when the leading tokens are already sentence-dense.

    Word-level ASR delivers one or two words per token. If any of the first
    20 tokens already holds >= 3 words (or >= 4 characters for languages
    without spaces), the payload is not word-level output and grouping it
    would only churn cue ids.
    """
    for token in tokens[:EARLY_SKIP_TOKENS]:
        text = normalize_text(token.text)
        if not text:
            continue
        if config.get("is_space_lang"):
            if len(text.split(" ")) >= 3:
                return True
        elif len(text) >= 4:
            return True
    return False


def token_word_count(group: Sequence[TimedToken]) -> int:
    text = normalize_text("".join(t.text for t in group))
    return len(text.split(" ")) if text else 0


# =============================================================================
# Grouping
# =============================================================================


def group_by_terminal_punctuation(
    tokens: Sequence[TimedToken],
    terminal_word_re: Pattern[str],
) -> Optional[List[Group]]:
    """Split clearly punctuated ASR at sentence punctuation.

    WHY: Some ASR tracks are punctuated. Their punctuation is a better
    sentence signal than pause timing, and interval breaking would cut
    those sentences into awkward fragments.

    HOW: Only engaged when at least 10 tokens contain sentence punctuation.
    A group closes after a token whose last character is punctuation,
    unless the token is an abbreviation matched by terminal_word_re.

    Returns None when the track is not punctuated enough.
    """
    if not tokens:
        return None
    count = sum(1 for t in tokens if _SENTENCE_PUNCT_RE.search(t.text))
    if count < MIN_PUNCTUATED_TOKENS:
        return None

    groups: List[Group] = []
    current: Group = []
    for token in tokens:
        text = normalize_text(token.text)
        if not text:
            continue
        current.append(token)
        if _SENTENCE_PUNCT_RE.search(text[-1]) and not terminal_word_re.search(text):
            groups.append(current)
            current = []

    if current:
        groups.append(current)
    return groups


def break_by_interval(tokens: Sequence[TimedToken], options: Dict[str, Any]) -> List[Group]:
    """Split tokens on break words/phrases and on pauses.

    WHY: Without punctuation, pauses and discourse markers ("so", "and",
    "i mean") are the only sentence boundary signals ASR gives us.

    HOW: Walk the tokens keeping an anchor time (start of the previous
    accepted token). Start a new group when:
      - the token, or the phrase it forms with the next token, is a break
        word and more than break_mini_time elapsed since the anchor; the
        new group's first token is flagged is_break
      - more than min_interval elapsed since the anchor
    A skip word ("uh") is dropped and the following token is appended to
    the current group instead.

    RULES:
    - options keys: break_words, skip_words, min_interval, break_mini_time
    - Empty groups are never returned
    """
    if not tokens:
        return []

    break_words = set(options.get("break_words") or [])
    skip_words = set(options.get("skip_words") or [])
    min_interval = int(options.get("min_interval") or 1000)
    break_mini_time = int(options.get("break_mini_time") or 500)

    anchor = tokens[0].start_ms
    groups: List[Group] = []
    current: Group = []

    i = 0
    while i < len(tokens):
        token = tokens[i]
        nxt = tokens[i + 1] if i + 1 < len(tokens) else None
        text = normalize_text(token.text)
        elapsed = token.start_ms - anchor

        if text in break_words and elapsed > break_mini_time:
            anchor = token.start_ms
            groups.append(current)
            current = [token]
            token.is_break = True
            i += 1
            continue

        if nxt is not None and elapsed > break_mini_time:
            pair = normalize_text(token.text + nxt.text)
            if pair in break_words:
                anchor = token.start_ms
                groups.append(current)
                current = [token, nxt]
                token.is_break = True
                i += 2
                continue

        if text in skip_words and nxt is not None:
            anchor = nxt.start_ms
            current.append(nxt)
            i += 2
            continue

        if elapsed <= min_interval:
            anchor = token.start_ms
            current.append(token)
            i += 1
            continue

        groups.append(current)
        current = [token]
        anchor = token.start_ms
        i += 1

    if current:
        groups.append(current)
    return [g for g in groups if g]


def split_and_balance(
    tokens: Sequence[TimedToken],
    options: Dict[str, Any],
    max_depth: int = DEFAULT_MAX_SPLIT_DEPTH,
    _depth: int = 0,
) -> List[Group]:
    """Break by interval, then re-split groups that are too long.

    WHY: A speaker who never pauses longer than min_interval would produce
    one endless group. Tightening the interval on each level finds the
    next-best pauses inside it.

    HOW: Groups over max_words (with more than one token) are re-split
    with min_interval reduced by 100 ms (floor 100). Consecutive
    single-word, single-token groups are coalesced into one group.

    RULES:
    - Recursion depth is capped at max_depth; at the cap the long group is
      emitted unchanged (all-single-character input would otherwise recurse
      once per token)
    """
    max_words = int(options.get("max_words") or 15)
    output: List[Group] = []
    singles: Group = []

    def flush_singles() -> None:
        if singles:
            output.append(list(singles))
            singles.clear()

    for group in break_by_interval(tokens, options):
        if token_word_count(group) > max_words and len(group) > 1:
            flush_singles()
            if _depth >= max_depth:
                output.append(group)
                continue
            tighter = dict(options)
            tighter["min_interval"] = max(100, int(options.get("min_interval") or 1000) - 100)
            output.extend(split_and_balance(group, tighter, max_depth, _depth + 1))
            continue

        if len(group) == 1 and token_word_count(group) <= 1:
            singles.append(group[0])
            continue

        flush_singles()
        output.append(group)

    flush_singles()
    return output


def _word_pattern(words: Sequence[str], template: str) -> Optional[Pattern[str]]:
    if not words:
        return None
    alternation = "|".join(re.escape(w) for w in words)
    return re.compile(template.format(alternation), re.IGNORECASE)


def merge_groups_by_boundary(groups: List[Group], options: Dict[str, Any]) -> List[Group]:
    """Rejoin adjacent groups split in the middle of a phrase.

    WHY: Interval breaking cuts at pauses, and speakers often pause right
    after "the" or right before "to". Such cuts leave both halves
    untranslatable.

    HOW: Merge group i+1 into the current merged group when its head is
    not an explicit break, the gap from the previous group's tail is at
    most min_interval, and either the head is a start word or the tail
    ends with an end word. The merge is skipped if the result would exceed
    max_words.

    RULES:
    - options keys: start_words, end_words, min_interval, max_words
    - Without start and end words the groups are returned unchanged
    """
    start_words = list(options.get("start_words") or [])
    end_words = list(options.get("end_words") or [])
    if not groups or (not start_words and not end_words):
        return groups

    start_pattern = _word_pattern(start_words, r"^\s*({})$")
    end_pattern = _word_pattern(end_words, r"\b({})\s*$")
    min_interval = int(options.get("min_interval") or 1000)
    max_words = int(options.get("max_words") or 20)

    merged: List[Group] = [list(groups[0])]
    for i in range(len(groups) - 1):
        tail = groups[i][-1]
        head = groups[i + 1][0]
        gap = head.start_ms - tail.start_ms
        holder = merged[-1]

        boundary_word = bool(
            (start_pattern and start_pattern.search(head.text))
            or (end_pattern and end_pattern.search(tail.text))
        )
        if head.is_break or gap > min_interval or not boundary_word:
            merged.append(list(groups[i + 1]))
            continue

        if token_word_count(holder + groups[i + 1]) <= max_words:
            holder.extend(groups[i + 1])
        else:
            merged.append(list(groups[i + 1]))

    return merged


def merge_short_tail_groups(groups: List[Group], options: Dict[str, Any]) -> List[Group]:
    """Fold trailing short groups into their predecessor, back to front.

    Walking backwards lets a chain of short groups collapse in one pass:
    once a group absorbs its successor, it is itself checked against the
    group before it.
    """
    min_interval = int(options.get("min_interval") or 1000)
    min_word_length = int(options.get("min_word_length") or 1)
    sentence_min_word = int(options.get("sentence_min_word") or 20)

    out = [list(g) for g in groups]
    for i in range(len(out) - 1, 0, -1):
        current = out[i]
        previous = out[i - 1]
        if not current or not previous:
            continue
        if len(current) > min_word_length:
            continue
        if len(current) + len(previous) >= sentence_min_word:
            continue
        if current[0].start_ms - previous[-1].start_ms > min_interval:
            continue
        if current[0].is_break:
            continue
        previous.extend(current)
        del out[i]
    return out


# =============================================================================
# Materializing
# =============================================================================


def resolve_cue_end(group: Group, next_group: Optional[Group]) -> int:
    """Pick a group's end: its explicit end, clipped to the next group's start."""
    explicit_end = group[-1].end_ms
    next_start = next_group[0].start_ms if next_group else None
    if explicit_end is None or (next_start is not None and explicit_end > next_start):
        return next_start if next_start is not None else group[-1].start_ms
    return explicit_end


def groups_to_cues(groups: List[Group], track_key: str, source: CueSource | str) -> List[Cue]:
    """Turn final token groups into cues.

    RULES:
    - A non-positive span gets the 1800 ms floor rather than being dropped
    - Text is the concatenated token text, newlines folded, normalized
    - Groups whose text normalizes to "" produce no cue
    """
    cues: List[Cue] = []
    for i, group in enumerate(groups):
        if not group:
            continue
        start_ms = group[0].start_ms
        end_ms = resolve_cue_end(group, groups[i + 1] if i + 1 < len(groups) else None)
        if end_ms <= start_ms:
            end_ms = start_ms + FLOOR_DURATION_MS

        text = normalize_text("".join(t.text for t in group).replace("\n", " "))
        if not text:
            continue
        cues.append(Cue.create(track_key, start_ms, end_ms, text, source))
    return cues


# =============================================================================
# Stabilizer
# =============================================================================


class AsrStabilizer:
    """Builds sentence-level cues from an ASR track's accumulated events.

    WHY: The session re-runs the stabilizer over the whole event buffer of a
    track every time new events arrive. Because the pipeline is pure, cues
    that did not change keep their ids and are neither re-inserted nor
    re-translated.

    HOW: build_cues() resolves the language config and runs the pipeline
    described in the module docstring. Punctuated tracks take the
    punctuation route; everything else takes the interval route followed by
    boundary merging and short-tail absorption.

    RULES:
    - Only the newest max_events events are considered (min 100)
    - words_regex lists abbreviations whose "." is not a sentence end; an
      invalid pattern falls back to DEFAULT_WORDS_REGEX
    """

    def __init__(
        self,
        words_regex: str = DEFAULT_WORDS_REGEX,
        max_events: int = DEFAULT_MAX_EVENTS,
        max_split_depth: int = DEFAULT_MAX_SPLIT_DEPTH,
    ) -> None:
        try:
            self.terminal_word_re = re.compile(words_regex or DEFAULT_WORDS_REGEX)
        except re.error:
            logger.warning("Invalid abbreviation pattern %r, using default", words_regex)
            self.terminal_word_re = re.compile(DEFAULT_WORDS_REGEX)
        self.max_events = max(100, int(max_events))
        self.max_split_depth = max(1, int(max_split_depth))

    def build_cues(
        self,
        events: Any,
        track_lang: Optional[str] = "",
        track_key: Optional[str] = None,
        source: CueSource | str = CueSource.HOOK,
    ) -> List[Cue]:
        lang = str(track_lang or "").lower()
        key = str(track_key or f"{lang or 'auto'}::asr")
        src = CueSource.coerce(source)

        if not isinstance(events, (list, tuple)):
            return []
        cleaned = sanitize_events(list(events)[-self.max_events:])
        if not cleaned:
            return []

        config = merge_lang_config(lang)
        tokens = events_to_tokens(cleaned, bool(config.get("is_space_lang")))
        if not tokens:
            return []
        if early_skip(config, tokens):
            return []

        split_config = config.get("split_config") or {}

        punctuated = group_by_terminal_punctuation(tokens, self.terminal_word_re)
        if punctuated:
            options = {
                "break_words": split_config.get("symbol_break_words"),
                "skip_words": split_config.get("skip_words"),
                "min_interval": int(split_config.get("min_interval") or 1000) * 5,
                "max_words": int(split_config.get("max_words") or 20),
                "break_mini_time": int(split_config.get("break_mini_time") or 500),
            }
            groups: List[Group] = []
            for chunk in punctuated:
                groups.extend(split_and_balance(chunk, options, self.max_split_depth))
            return groups_to_cues(groups, key, src)

        groups = split_and_balance(tokens, {
            "break_words": split_config.get("break_words"),
            "skip_words": split_config.get("skip_words"),
            "min_interval": int(split_config.get("min_interval") or 1000),
            "max_words": int(split_config.get("max_words") or 15),
            "break_mini_time": int(split_config.get("break_mini_time") or 500),
        }, self.max_split_depth)

        merge_config = config.get("merge_config") or {}
        groups = merge_groups_by_boundary(groups, {
            "start_words": merge_config.get("start_words"),
            "end_words": merge_config.get("end_words"),
            "min_interval": int(merge_config.get("min_interval") or 1000),
            "max_words": int(merge_config.get("max_words") or 20),
        })

        for tail_config in config.get("end_compatible_configs") or []:
            groups = merge_short_tail_groups(groups, tail_config)

        return groups_to_cues(groups, key, src)


def is_low_confidence_asr_window(
    cues: Sequence[Cue],
    window_ms: int = 8000,
    min_cue_count: int = 8,
    short_gap_ms: int = 180,
) -> bool:
    """Detect an over-segmented, unpunctuated ASR stream.

    WHY: When the stabilizer cannot find sentence structure it emits many
    tiny cues. Callers use this signal to prefer a different source (for
    example the visible caption text) or to widen grouping.

    HOW: Two independent triggers:
      - fewer than 15% of cues end in punctuation AND at least
        min_cue_count cues fit inside window_ms
      - average confidence below 0.52 AND at least 60% of consecutive
        gaps are <= short_gap_ms

    RULES:
    - window_ms floored at 1000, min_cue_count at 2, short_gap_ms at 20
    - An empty list is never low-confidence
    """
    items = list(cues or [])
    if not items:
        return False

    window = max(1000, int(window_ms))
    min_count = max(2, int(min_cue_count))
    short_gap = max(20, int(short_gap_ms))

    short_gap_count = 0
    for prev, curr in zip(items, items[1:]):
        prev_end = prev.end_ms or prev.start_ms or 0
        if curr.start_ms - prev_end <= short_gap:
            short_gap_count += 1

    punctuation_ratio = sum(1 for c in items if has_terminal_punctuation(c.text)) / len(items)
    avg_confidence = sum(float(c.confidence or 0) for c in items) / len(items)
    over_segmented = len(items) >= min_count and items[-1].end_ms - items[0].start_ms <= window
    too_many_short_gaps = short_gap_count >= int(len(items) * 0.6)

    return (punctuation_ratio < 0.15 and over_segmented) or (
        avg_confidence < 0.52 and too_many_short_gaps
    )
