"""Core cue production, queueing, and render selection.

WHY: The core is the deterministic heart of the engine. Everything here is
synchronous and free of I/O so the session and the replay CLI can drive it
identically and tests can pin exact outputs.

HOW: ir.py and text.py define cues and text rules; events.py, stabilizer.py,
merger.py, and dom_fallback.py produce cues; translation_queue.py and
render_policy.py consume them.

RULES:
- Public functions return empty results on unusable input, never raise
- Cue is the contract between producers and consumers
"""

from caption_sync.core.dom_fallback import DomFallbackCommitter
from caption_sync.core.events import events_to_simple_cues, sanitize_events
from caption_sync.core.ir import Cue, CueSource, TimedEvent, TimedToken, build_cue_id
from caption_sync.core.merger import ManualCaptionSentenceMerger
from caption_sync.core.render_policy import (
    ActiveCueSelector,
    PlaybackSnapshot,
    RenderFrame,
    RenderResult,
    RenderState,
    TailHoldSelector,
    cue_text_similarity,
    resolve_render_text,
    resolve_render_text_with_playback,
    select_active_cue,
    select_cue_by_time_and_text,
)
from caption_sync.core.stabilizer import AsrStabilizer, is_low_confidence_asr_window
from caption_sync.core.translation_queue import CueTranslationQueue, QueueItem

__all__ = [
    "ActiveCueSelector",
    "AsrStabilizer",
    "Cue",
    "CueSource",
    "CueTranslationQueue",
    "DomFallbackCommitter",
    "ManualCaptionSentenceMerger",
    "PlaybackSnapshot",
    "QueueItem",
    "RenderFrame",
    "RenderResult",
    "RenderState",
    "TailHoldSelector",
    "TimedEvent",
    "TimedToken",
    "build_cue_id",
    "cue_text_similarity",
    "events_to_simple_cues",
    "is_low_confidence_asr_window",
    "resolve_render_text",
    "resolve_render_text_with_playback",
    "sanitize_events",
    "select_active_cue",
    "select_cue_by_time_and_text",
]
