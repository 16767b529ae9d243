"""Event sanitizing and the one-cue-per-event baseline.

WHY: Both hook producers (ASR stabilizer and manual merger) start from the
same noisy event list: events without duration, empty events, and
continuation-only "append" events that only repeat text already shown.
Cleaning them in one place keeps the two producers consistent.

HOW: sanitize_events() coerces raw dicts into TimedEvent, drops malformed
events, and sorts by start time. events_to_simple_cues() turns each clean
event into exactly one cue, used directly for manual tracks and as the
merger's input.

RULES:
- Never raises; anything malformed is dropped
- Sorting is stable, so events sharing a start keep arrival order
- A non-positive duration gets the 1800 ms floor
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, List

from caption_sync.core.ir import Cue, CueSource, TimedEvent
from caption_sync.core.text import normalize_caption_text, normalize_text

logger = logging.getLogger(__name__)

# Floor applied when an event or group has no usable end time.
FLOOR_DURATION_MS = 1800


def sanitize_events(events: Any) -> List[TimedEvent]:
    """Coerce, filter, and sort upstream events.

    Drops events that are not dict/TimedEvent, lack a duration, have no
    non-empty segment, or are continuation-only.
    """
    if not isinstance(events, (list, tuple)):
        return []

    out: List[TimedEvent] = []
    for raw in events:
        event = TimedEvent.from_raw(raw)
        if event is None:
            continue
        if not event.segments or event.duration_ms is None or event.append:
            continue
        out.append(event)

    dropped = len(events) - len(out)
    if dropped:
        logger.debug("Dropped %d of %d caption events during sanitize", dropped, len(events))

    out.sort(key=lambda e: e.start_ms)
    return out


def events_to_simple_cues(
    events: Iterable[Any],
    track_key: str,
    source: CueSource | str = CueSource.HOOK,
) -> List[Cue]:
    """Build one cue per well-formed event.

    WHY: Manually-authored tracks are already sentence-like. They need no
    token grouping, only filtering and stable ids.

    HOW: Sanitize, join each event's normalized segments with single
    spaces, and keep the result if normalize_caption_text() accepts it.

    RULES:
    - end_ms = start_ms + duration_ms, or start_ms + 1800 if duration <= 0
    - Music-only, symbol-only, and out-of-bounds lines produce no cue
    """
    cues: List[Cue] = []
    for event in sanitize_events(events):
        start_ms = event.start_ms
        duration_ms = event.duration_ms or 0
        end_ms = start_ms + duration_ms if duration_ms > 0 else start_ms + FLOOR_DURATION_MS

        parts = [normalize_text(seg.text) for seg in event.segments]
        text = normalize_caption_text(" ".join(p for p in parts if p))
        if not text:
            continue

        cues.append(Cue.create(track_key, start_ms, end_ms, text, source))
    return cues
