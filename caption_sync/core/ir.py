"""Intermediate representation dataclasses for timed caption data.

WHY: The capture layer delivers loosely-typed caption events, the producers
turn them into cues, and the session, translation queue, and render policy
all consume those cues. The IR gives every stage one well-typed contract and
puts cue identity (the basis of all de-duplication) in a single place.

HOW: Four types form the hierarchy:
  TimedToken — one lexical unit with an absolute start time
  TimedEvent — one upstream caption event (start, duration, segments)
  CueSource  — where a cue came from (intercepted hook vs. scraped DOM)
  Cue        — the stable, translatable output unit

RULES:
- All times are integer milliseconds on the video clock
- TimedEvent and Cue are frozen; a changed span or text is a new Cue
- cue_id is a pure function of (track_key, start_ms, end_ms, text)
- TimedEvent.from_raw() never raises; malformed input returns None
- TimedToken is mutable scratch state, created fresh per stabilizer run
"""

from __future__ import annotations

import enum
import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from caption_sync.core.text import calculate_cue_confidence, count_words

_TRACK_WHITESPACE_RE = re.compile(r"\s+")


class CueSource(str, enum.Enum):
    """Origin of a cue.

    Inherits from str so values compare equal to "hook" / "dom" and
    serialize cleanly to JSON.
    """

    HOOK = "hook"
    DOM = "dom"

    @classmethod
    def coerce(cls, value: Any, default: CueSource | None = None) -> CueSource:
        """Map a loose value to a CueSource, falling back to default (HOOK)."""
        try:
            return cls(value)
        except ValueError:
            return default or cls.HOOK


def coerce_ms(value: Any) -> Optional[int]:
    """Convert a loosely-typed upstream timestamp to whole milliseconds.

    Returns None for missing, non-numeric, or non-finite values. Booleans
    are rejected even though Python treats them as ints.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(math.floor(number))


@dataclass
class TimedToken:
    """One lexical unit with an origin timestamp.

    WHY: ASR tracks deliver words (sometimes raw characters) as segments of
    larger events. Grouping works on a flat token list.

    RULES:
    - start_ms: absolute start (event start + segment offset)
    - end_ms: set only on the last token of an event with a valid duration
    - is_break: set by the interval breaker when an explicit break word
      started a new group on this token; such groups are never folded back
    """

    start_ms: int
    text: str
    end_ms: Optional[int] = None
    is_break: bool = False


@dataclass(frozen=True)
class TimedEvent:
    """One caption event as delivered by the capture layer.

    WHY: Upstream payloads are JSON with optional, string-typed, or missing
    fields. They are converted once here, so producers only see typed
    values.

    HOW: from_raw() reads the json3 field names (tStartMs, dDurationMs,
    aAppend, segs[].utf8, segs[].tOffsetMs). Segment start times are made
    absolute during conversion.

    RULES:
    - duration_ms is None when the event carried no usable duration
    - append marks continuation-only events (aAppend == 1)
    - segments keep their raw text; whitespace is significant for ASR tokens
    """

    start_ms: int
    duration_ms: Optional[int]
    segments: Tuple[TimedToken, ...] = ()
    append: bool = False

    @classmethod
    def from_raw(cls, raw: Any) -> Optional[TimedEvent]:
        if isinstance(raw, TimedEvent):
            return raw
        if not isinstance(raw, dict):
            return None

        start_ms = coerce_ms(raw.get("tStartMs"))
        if start_ms is None:
            return None

        segments = []
        raw_segs = raw.get("segs")
        if isinstance(raw_segs, list):
            for seg in raw_segs:
                if not isinstance(seg, dict):
                    continue
                text = seg.get("utf8")
                if not isinstance(text, str) or not text:
                    continue
                offset = coerce_ms(seg.get("tOffsetMs")) or 0
                segments.append(TimedToken(start_ms=start_ms + offset, text=text))

        return cls(
            start_ms=start_ms,
            duration_ms=coerce_ms(raw.get("dDurationMs")),
            segments=tuple(segments),
            append=coerce_ms(raw.get("aAppend")) == 1,
        )

    def to_raw(self) -> Dict[str, Any]:
        """Inverse of from_raw(), used when re-buffering events per track."""
        raw: Dict[str, Any] = {
            "tStartMs": self.start_ms,
            "segs": [
                {"utf8": seg.text, "tOffsetMs": seg.start_ms - self.start_ms}
                for seg in self.segments
            ],
        }
        if self.duration_ms is not None:
            raw["dDurationMs"] = self.duration_ms
        if self.append:
            raw["aAppend"] = 1
        return raw


def sha1_hex(message: str) -> str:
    return hashlib.sha1(str(message or "").encode("utf-8")).hexdigest()


def build_cue_id(track_key: str, start_ms: int, end_ms: int, text: str) -> str:
    """Build the deterministic cue id.

    WHY: Every de-duplication decision (track cue sets, translation queue,
    translation map) keys on this id, so identical inputs must always map
    to the same string across runs and processes.

    HOW: "yt:{track}:{start}:{end}:{sha1(text)}" with whitespace in the
    track key replaced by underscores and negative times clamped to 0.
    """
    safe_track = _TRACK_WHITESPACE_RE.sub("_", str(track_key or "unknown"))
    start = max(0, int(start_ms or 0))
    end = max(0, int(end_ms or 0))
    return f"yt:{safe_track}:{start}:{end}:{sha1_hex(text)}"


@dataclass(frozen=True)
class Cue:
    """A stabilized, time-bounded, translatable unit of caption text.

    WHY: Cues are what gets translated and displayed. Immutability makes
    the id a reliable identity: a cue with a different span or text is a
    different cue with a different id.

    HOW: Producers call Cue.create(), which computes the id and confidence
    from the same normalized inputs.

    RULES:
    - start_ms < end_ms
    - text is non-empty and whitespace-normalized
    - confidence is in [0, 1]
    - window_id is set only for cues committed by the DOM fallback
    """

    cue_id: str
    track_key: str
    start_ms: int
    end_ms: int
    text: str
    source: CueSource = CueSource.HOOK
    confidence: float = 0.0
    window_id: Optional[str] = field(default=None, compare=False)

    @classmethod
    def create(
        cls,
        track_key: str,
        start_ms: int,
        end_ms: int,
        text: str,
        source: CueSource | str = CueSource.HOOK,
        window_id: Optional[str] = None,
    ) -> Cue:
        return cls(
            cue_id=build_cue_id(track_key, start_ms, end_ms, text),
            track_key=track_key,
            start_ms=start_ms,
            end_ms=end_ms,
            text=text,
            source=CueSource.coerce(source),
            confidence=calculate_cue_confidence(text, start_ms, end_ms, count_words(text)),
            window_id=window_id,
        )

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "cue_id": self.cue_id,
            "track_key": self.track_key,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "text": self.text,
            "source": self.source.value,
            "confidence": self.confidence,
        }
        if self.window_id is not None:
            data["window_id"] = self.window_id
        return data
