"""Per-capture caption session: track store, mode switching, and render ticks.

WHY: The core producers, the translation queue, and the render policy are
pure building blocks. Something has to own the state that ties them
together for one video: which responses were already seen, the buffered
events per track, the cues per track, the translations received so far,
and whether captions come from the hook stream or the DOM fallback.

HOW: CaptionSession is a synchronous state machine driven by four inputs:
  handle_message() — a bridge message (timedtext payload or parse error)
  ingest_dom()     — a visible-caption snapshot (fallback mode only)
  tick()           — the playback clock; returns the RenderFrame to show
  take_batch() / apply_translations() / fail_batch() — translation I/O
Cue rebuilds are debounced through an injectable scheduler (the runtime
passes loop.call_later); without one, rebuilds run immediately.

RULES:
- All state is owned by the session and rebuilt on start()
- stop() cancels every pending timer and resets every map; callbacks that
  fire after stop() are no-ops
- Responses are deduplicated by (url, response_hash) within dedupe_ttl_ms
- parse_error_threshold consecutive parse errors, or no hook payload within
  hook_timeout_ms of start(), switch the session to DOM fallback
- Hook mode shows a cue only once its translation exists; fallback mode
  shows the original immediately
- Track cue lists are pruned by playback horizon and hard-capped in size
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from caption_sync.bridge.models import ParseErrorPayload, TimedTextPayload, parse_bridge_message
from caption_sync.config import SessionSettings
from caption_sync.core.dom_fallback import DomFallbackCommitter
from caption_sync.core.ir import Cue, TimedEvent
from caption_sync.core.merger import ManualCaptionSentenceMerger
from caption_sync.core.render_policy import (
    ActiveCueSelector,
    PlaybackSnapshot,
    RenderFrame,
    RenderState,
    TailHoldSelector,
    resolve_render_text_with_playback,
    select_cue_by_time_and_text,
)
from caption_sync.core.stabilizer import AsrStabilizer, is_low_confidence_asr_window
from caption_sync.core.translation_queue import CueTranslationQueue, QueueItem

logger = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], Any]
"""call_later(delay_seconds, callback) returning a handle with cancel()."""

DOM_TRACK_PREFIX = "dom:"


def _now_ms() -> int:
    return int(time.time() * 1000)


class CaptureMode(str, enum.Enum):
    """Where cues currently come from.

    Inherits from str so values serialize cleanly to JSON.
    """

    HOOK = "hook"
    FALLBACK = "fallback"


@dataclass
class TrackState:
    """Ordered cues of one track plus an id index for O(1) dedupe."""

    cues: List[Cue] = field(default_factory=list)
    cue_ids: Set[str] = field(default_factory=set)
    last_hook_at: int = 0
    # Set on ASR rebuilds whose latest cues look over-segmented
    low_confidence: bool = False


@dataclass
class TrackMeta:
    is_asr: bool
    track_lang: str


def merge_events(existing: Iterable[Any], incoming: Iterable[Any]) -> List[TimedEvent]:
    """Merge two event lists keyed by start time; incoming wins on collision.

    Responses for a growing ASR track overlap heavily. Keying by start time
    keeps one copy of each event and lets a corrected event replace the
    earlier one.
    """
    by_start: Dict[int, TimedEvent] = {}
    for raw in list(existing or ()) + list(incoming or ()):
        event = TimedEvent.from_raw(raw)
        if event is None:
            continue
        by_start[event.start_ms] = event
    return [by_start[start] for start in sorted(by_start)]


class CaptionSession:
    """State for one capture of one video.

    WHY: Navigating to another video must drop everything: cues, pending
    translations, DOM windows, and timers. Keeping all of it on one object
    makes that teardown a single call.

    HOW: Collaborators are injected (stabilizer, merger, queue, committer,
    selector, scheduler, clock) with working defaults, so tests can
    replace any one of them.

    RULES:
    - Call start() before feeding inputs; inputs while inactive are ignored
    - Times passed as now are wall-clock ms; video times are playback ms
    """

    def __init__(
        self,
        settings: Optional[SessionSettings] = None,
        stabilizer: Optional[AsrStabilizer] = None,
        merger: Optional[ManualCaptionSentenceMerger] = None,
        queue: Optional[CueTranslationQueue] = None,
        dom_committer: Optional[DomFallbackCommitter] = None,
        selector: Optional[ActiveCueSelector] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.settings = settings or SessionSettings()
        self.stabilizer = stabilizer or AsrStabilizer()
        self.merger = merger or ManualCaptionSentenceMerger()
        self.queue = queue or CueTranslationQueue()
        self.dom_committer = dom_committer or DomFallbackCommitter(quiet_ms=700, force_ms=1800)
        self.selector: ActiveCueSelector = selector or TailHoldSelector()
        self.scheduler = scheduler
        self._clock = clock or _now_ms
        self.active = False
        self._reset_state()

    def _reset_state(self) -> None:
        self.started_at = 0
        self.mode = CaptureMode.HOOK
        self.hook_detected_at = 0
        self.parse_failures = 0
        self.primary_track_key = ""
        self.seen_responses: Dict[str, int] = {}
        self.tracks: Dict[str, TrackState] = {}
        self.translations: Dict[str, str] = {}
        self.event_buffer: Dict[str, List[TimedEvent]] = {}
        self.track_meta: Dict[str, TrackMeta] = {}
        self.render_states: Dict[str, RenderState] = {}
        self.last_playback: Optional[PlaybackSnapshot] = None
        self.video_ms = 0
        self._pending_builds: Set[str] = set()
        self._build_handle: Any = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, now: Optional[int] = None) -> None:
        """Begin a fresh capture. Calling start() on an active session is a no-op."""
        if self.active:
            return
        self._reset_state()
        self.queue.reset()
        self.dom_committer.reset()
        self.active = True
        self.started_at = self._now(now)
        logger.info("Caption session started")

    def stop(self) -> None:
        """Cancel timers and drop all state synchronously."""
        self.active = False
        self._cancel_build()
        self.queue.reset()
        self.dom_committer.reset()
        self._reset_state()
        logger.info("Caption session stopped")

    # ------------------------------------------------------------------
    # Hook input
    # ------------------------------------------------------------------

    def handle_message(self, data: Any, now: Optional[int] = None) -> bool:
        """Process one bridge message. Returns True if it changed track state.

        WHY: The capture side may deliver the same response several times
        (player retries, overlapping ranges) and reports parse failures
        in-band on the same channel.

        HOW: Validate with parse_bridge_message(); count parse errors toward
        the fallback threshold; otherwise mark the hook alive, drop
        duplicates, merge events into the track buffer, and schedule a
        debounced rebuild.

        RULES:
        - Invalid messages return False and are logged at debug
        - A valid timedtext payload switches the session back to hook mode
        """
        if not self.active:
            return False
        message = parse_bridge_message(data)
        if message is None:
            return False

        now = self._now(now)
        if isinstance(message, ParseErrorPayload):
            self.parse_failures += 1
            logger.debug("Upstream parse error (%d in a row)", self.parse_failures)
            if self.parse_failures >= self.settings.parse_error_threshold:
                self._enter_fallback("%d consecutive parse errors" % self.parse_failures)
            return False

        return self._handle_timedtext(message, now)

    def _handle_timedtext(self, payload: TimedTextPayload, now: int) -> bool:
        self.hook_detected_at = now
        self.parse_failures = 0
        if self.mode is not CaptureMode.HOOK:
            logger.info("Hook payload received, leaving DOM fallback")
            self.mode = CaptureMode.HOOK

        self._prune_seen_responses(now)
        key = payload.dedupe_key
        last_seen = self.seen_responses.get(key)
        if last_seen is not None and now - last_seen < self.settings.dedupe_ttl_ms:
            logger.debug("Dropped duplicate response %s", key)
            return False
        self.seen_responses[key] = now

        track_key = payload.track_key
        existing = self.event_buffer.get(track_key, [])
        self.event_buffer[track_key] = merge_events(existing, payload.events)
        self.track_meta[track_key] = TrackMeta(
            is_asr=payload.is_asr,
            track_lang=(payload.track_lang or "auto").lower(),
        )
        self._schedule_build(track_key)
        return True

    def _prune_seen_responses(self, now: int) -> None:
        ttl = self.settings.dedupe_ttl_ms
        for key, seen_at in list(self.seen_responses.items()):
            if now - seen_at >= ttl:
                del self.seen_responses[key]

    # ------------------------------------------------------------------
    # Debounced rebuild
    # ------------------------------------------------------------------

    def _schedule_build(self, track_key: str) -> None:
        self._pending_builds.add(track_key)
        if self.scheduler is None:
            self._run_pending_builds()
            return
        self._cancel_build()
        self._build_handle = self.scheduler(
            self.settings.build_debounce_ms / 1000.0,
            self._run_pending_builds,
        )

    def _cancel_build(self) -> None:
        if self._build_handle is not None:
            self._build_handle.cancel()
            self._build_handle = None

    def _run_pending_builds(self) -> None:
        self._build_handle = None
        if not self.active:
            return
        pending, self._pending_builds = self._pending_builds, set()
        for track_key in sorted(pending):
            self.rebuild_track(track_key)

    def rebuild_track(self, track_key: str, now: Optional[int] = None) -> List[Cue]:
        """Re-run the producer over a track's buffered events.

        The track's cue list is replaced with the fresh cues, every cue is
        enqueued for translation, and the track becomes primary. An empty
        result leaves the previous cues in place (the stabilizer may need
        more data to find sentences).
        """
        if not self.active:
            return []
        events = self.event_buffer.get(track_key)
        meta = self.track_meta.get(track_key)
        if not events or meta is None:
            return []

        low_confidence = False
        if meta.is_asr:
            cues = self.stabilizer.build_cues(events, meta.track_lang, track_key, "hook")
            low_confidence = is_low_confidence_asr_window(cues[-8:])
            if low_confidence:
                logger.debug("Track %s looks over-segmented", track_key)
        else:
            cues = self.merger.build_cues(events, track_key, "hook")

        if not cues:
            return []

        now = self._now(now)
        self.tracks[track_key] = TrackState(last_hook_at=now, low_confidence=low_confidence)
        self.add_cues(track_key, cues, now)
        logger.debug("Rebuilt %s: %d cues from %d events", track_key, len(cues), len(events))
        return cues

    # ------------------------------------------------------------------
    # Track store
    # ------------------------------------------------------------------

    def add_cues(self, track_key: str, cues: Iterable[Cue], now: Optional[int] = None) -> int:
        """Append unseen cues to a track, enqueue them, prune. Returns count added."""
        track = self.tracks.get(track_key)
        if track is None:
            track = TrackState()
            self.tracks[track_key] = track
        track.last_hook_at = self._now(now)
        self.primary_track_key = track_key

        added: List[Cue] = []
        for cue in cues:
            if cue.cue_id in track.cue_ids:
                continue
            track.cue_ids.add(cue.cue_id)
            track.cues.append(cue)
            added.append(cue)

        self._prune_track(track)
        # Cues pruned on arrival are never sent for translation
        for cue in added:
            if cue.cue_id in track.cue_ids:
                self.queue.enqueue(cue.cue_id, cue.text)
        return len(added)

    def _prune_track(self, track: TrackState) -> None:
        """Drop cues ending behind the playback horizon, then cap the list."""
        limit = self.settings.max_cues_per_track
        cutoff = self.video_ms - self.settings.prune_behind_ms
        kept = [c for c in track.cues if c.end_ms >= cutoff]
        if len(kept) > limit:
            kept = kept[-limit:]
        track.cues = kept
        track.cue_ids = {c.cue_id for c in kept}

    def track(self, track_key: str) -> Optional[TrackState]:
        return self.tracks.get(track_key)

    # ------------------------------------------------------------------
    # DOM fallback input
    # ------------------------------------------------------------------

    def ingest_dom(
        self,
        window_id: str,
        raw_text: str,
        video_ms: int,
        now: Optional[int] = None,
    ) -> Optional[Cue]:
        """Feed a visible-caption snapshot. Ignored unless in fallback mode."""
        if not self.active or self.mode is not CaptureMode.FALLBACK:
            return None
        now = self._now(now)
        cue = self.dom_committer.ingest(window_id, raw_text, video_ms, now)
        if cue is not None:
            self.add_cues(cue.track_key, [cue], now)
        return cue

    def flush_dom(self, video_ms: int, now: Optional[int] = None) -> List[Cue]:
        """Commit DOM windows whose text has gone quiet."""
        if not self.active or self.mode is not CaptureMode.FALLBACK:
            return []
        now = self._now(now)
        cues = self.dom_committer.flush(video_ms, now)
        for cue in cues:
            self.add_cues(cue.track_key, [cue], now)
        return cues

    def drop_missing_windows(self, valid_ids: Iterable[str]) -> None:
        self.dom_committer.drop_missing_windows(valid_ids)

    def _enter_fallback(self, reason: str) -> None:
        if self.mode is CaptureMode.FALLBACK:
            return
        self.mode = CaptureMode.FALLBACK
        logger.warning("Switching to DOM caption fallback: %s", reason)

    # ------------------------------------------------------------------
    # Translation I/O
    # ------------------------------------------------------------------

    def take_batch(self, max_items: Optional[int] = None) -> List[QueueItem]:
        if not self.active:
            return []
        return self.queue.take(max_items or self.settings.batch_size)

    def apply_translations(self, batch: Iterable[QueueItem], results: Dict[str, str]) -> int:
        """Record results for a taken batch. Returns the number translated.

        Items the translator returned no text for are released from
        inflight so a later rebuild can enqueue them again.
        """
        if not self.active:
            return 0
        translated: List[str] = []
        missing: List[str] = []
        for item in batch:
            text = (results.get(item.id) or "").strip()
            if text:
                self.translations[item.id] = text
                translated.append(item.id)
            else:
                missing.append(item.id)
        self.queue.mark_translated(translated)
        self.queue.clear_inflight(missing)
        return len(translated)

    def fail_batch(self, batch: List[QueueItem], reason: str = "") -> None:
        """Return a failed batch to pending for the caller's retry policy."""
        if not self.active:
            return
        logger.warning("Translation batch of %d failed, requeued: %s", len(batch), reason or "unknown")
        self.queue.requeue(batch)

    # ------------------------------------------------------------------
    # Render tick
    # ------------------------------------------------------------------

    def tick(
        self,
        playback: PlaybackSnapshot,
        now: Optional[int] = None,
        window_text: Optional[str] = None,
    ) -> RenderFrame:
        """Evaluate the display for the current playback position.

        WHY: The overlay is redrawn on a fixed interval; each tick must be
        cheap and must never blink between adjacent cues.

        HOW: Check the hook timeout, select the active cue (from DOM tracks
        in fallback mode, from the primary track otherwise), decide which
        lines may be shown, then apply the playback-aware hold to both.

        RULES:
        - window_text, when given, biases selection toward the cue whose
          text matches the caption visible on screen
        - An inactive session always returns an empty frame
        """
        if not self.active:
            return RenderFrame()

        now = self._now(now)
        self.video_ms = playback.video_ms
        if (
            self.mode is CaptureMode.HOOK
            and self.hook_detected_at == 0
            and now - self.started_at > self.settings.hook_timeout_ms
        ):
            self._enter_fallback("no hook payload within %d ms" % self.settings.hook_timeout_ms)

        cue = self._select_cue(playback.video_ms, window_text)

        original = translated = ""
        if cue is not None:
            translation = self.translations.get(cue.cue_id, "")
            if translation or self.mode is CaptureMode.FALLBACK:
                original = cue.text
                translated = translation

        hold_ms = self.settings.hold_ms
        orig = resolve_render_text_with_playback(
            original, self.render_states.get("orig"), playback, self.last_playback, now, hold_ms,
        )
        trans = resolve_render_text_with_playback(
            translated, self.render_states.get("trans"), playback, self.last_playback, now, hold_ms,
        )
        self.render_states["orig"] = orig.state
        self.render_states["trans"] = trans.state
        self.last_playback = playback

        return RenderFrame(orig.text, trans.text, cue.cue_id if cue else None)

    def _select_cue(self, video_ms: int, window_text: Optional[str]) -> Optional[Cue]:
        if self.mode is CaptureMode.FALLBACK:
            candidates = [
                track.cues for key, track in self.tracks.items()
                if key.startswith(DOM_TRACK_PREFIX) and track.cues
            ]
        else:
            primary = self.tracks.get(self.primary_track_key)
            candidates = [primary.cues] if primary and primary.cues else []

        for cues in candidates:
            if window_text:
                cue = select_cue_by_time_and_text(cues, video_ms, window_text, self.selector)
            else:
                cue = self.selector.select(cues, video_ms)
            if cue is not None:
                return cue
        return None

    def _now(self, now: Optional[int]) -> int:
        return self._clock() if now is None else int(now)
