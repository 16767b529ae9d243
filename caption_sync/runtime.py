"""Asyncio driver for a CaptionSession.

WHY: A CaptionSession is a synchronous state machine; something has to
feed it messages as they arrive, poll the playback clock on a fixed tick,
and push translation batches through the network without blocking either.

HOW: SessionRunner owns three tasks on one event loop:
  _consume_inbound — drains an asyncio.Queue of bridge messages and DOM
                     snapshots into the session
  _render_loop     — every render_interval_ms reads the playback clock,
                     ticks the session, and hands the frame to on_frame
  _flush_loop      — every flush_interval_ms takes a batch and awaits the
                     translator
The session's debounce uses loop.call_later on the same loop.

RULES:
- All session mutation happens on the loop thread; no locks
- Translation failures (TranslationError, httpx.HTTPError) requeue the
  batch and are logged at warning; they never stop the runner
- stop() cancels every task and stops the session synchronously
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

import httpx

from caption_sync.api.client import TranslationError
from caption_sync.core.render_policy import PlaybackSnapshot, RenderFrame
from caption_sync.core.translation_queue import QueueItem
from caption_sync.session import CaptionSession

logger = logging.getLogger(__name__)


class Translator(Protocol):
    """Anything that turns queue items into {cue_id: translated_text}."""

    async def translate(self, items: Iterable[QueueItem]) -> Dict[str, str]:
        ...


@dataclass(frozen=True)
class DomSnapshot:
    """Visible caption text of one window at one playback position."""

    window_id: str
    text: str
    video_ms: int


class SessionRunner:
    """Runs a CaptionSession against live inputs until stopped.

    Usage:
        runner = SessionRunner(session, translator, playback=player.snapshot)
        task = asyncio.create_task(runner.run())
        await runner.submit(message)
        ...
        runner.stop()
    """

    def __init__(
        self,
        session: CaptionSession,
        translator: Optional[Translator],
        playback: Callable[[], PlaybackSnapshot],
        on_frame: Optional[Callable[[RenderFrame], None]] = None,
        window_text: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        self.session = session
        self.translator = translator
        self.playback = playback
        self.on_frame = on_frame
        self.window_text = window_text
        self.inbound: "asyncio.Queue[Any]" = asyncio.Queue()
        self._tasks: List["asyncio.Task[None]"] = []
        self._stopped: Optional[asyncio.Event] = None
        self.last_frame = RenderFrame()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    async def submit(self, message: Any) -> None:
        """Queue a bridge message (dict) or a DomSnapshot."""
        await self.inbound.put(message)

    def submit_nowait(self, message: Any) -> None:
        self.inbound.put_nowait(message)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the session and its tasks; return once stop() is called."""
        loop = asyncio.get_running_loop()
        if self.session.scheduler is None:
            self.session.scheduler = loop.call_later
        self._stopped = asyncio.Event()
        self.session.start()

        self._tasks = [
            asyncio.create_task(self._consume_inbound()),
            asyncio.create_task(self._render_loop()),
            asyncio.create_task(self._flush_loop()),
        ]
        try:
            await self._stopped.wait()
        finally:
            await self._cancel_tasks()

    def stop(self) -> None:
        """Stop the session now; tasks are cancelled by run()."""
        self.session.stop()
        for task in self._tasks:
            task.cancel()
        if self._stopped is not None:
            self._stopped.set()

    async def _cancel_tasks(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _consume_inbound(self) -> None:
        while True:
            message = await self.inbound.get()
            self.dispatch(message)
            self.inbound.task_done()

    def dispatch(self, message: Any) -> None:
        """Route one inbound item to the session."""
        if isinstance(message, DomSnapshot):
            self.session.ingest_dom(message.window_id, message.text, message.video_ms)
        else:
            self.session.handle_message(message)

    async def _render_loop(self) -> None:
        interval = self.session.settings.render_interval_ms / 1000.0
        while True:
            self.render_once()
            await asyncio.sleep(interval)

    def render_once(self) -> RenderFrame:
        playback = self.playback()
        self.session.flush_dom(playback.video_ms)
        hint = self.window_text() if self.window_text else None
        frame = self.session.tick(playback, window_text=hint)
        self.last_frame = frame
        if self.on_frame is not None:
            self.on_frame(frame)
        return frame

    async def _flush_loop(self) -> None:
        interval = self.session.settings.flush_interval_ms / 1000.0
        while True:
            await self.flush_translations()
            await asyncio.sleep(interval)

    async def flush_translations(self) -> int:
        """Send one batch to the translator. Returns the number translated.

        RULES:
        - No translator or nothing pending → 0 without awaiting anything
        - On any failure the batch goes back to pending (session.fail_batch)
        """
        if self.translator is None or not self.session.queue.has_pending():
            return 0
        batch = self.session.take_batch()
        if not batch:
            return 0

        try:
            results = await self.translator.translate(batch)
        except TranslationError as exc:
            self.session.fail_batch(batch, "%s (retryable=%s)" % (exc.code, exc.retryable))
            return 0
        except httpx.HTTPError as exc:
            self.session.fail_batch(batch, "%s: %s" % (type(exc).__name__, exc))
            return 0
        except Exception as exc:
            # Keeps the flush loop alive; the batch must not stay inflight
            logger.exception("Translator raised unexpectedly")
            self.session.fail_batch(batch, "%s: %s" % (type(exc).__name__, exc))
            return 0

        return self.session.apply_translations(batch, results)
