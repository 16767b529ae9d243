"""Caption Sync — real-time caption stabilization, translation queueing, and rendering.

WHY: Live caption streams (automatic speech recognition or manually-authored
tracks) arrive as noisy, overlapping, incrementally-growing fragments. Showing
or translating them as-is flickers, duplicates work, and drifts from the
video. This package turns them into stable sentence-level cues, tracks each
cue's translation exactly once, and picks what to display on every tick.

HOW: Four stages, each independently testable:
  produce   — core.stabilizer / core.merger / core.dom_fallback → Cue
  queue     — core.translation_queue dedupes and batches cue ids
  translate — api.client posts batches to a translation proxy
  render    — core.render_policy selects the active cue and applies holds
session.py wires the stages together for one capture; runtime.py drives a
session with asyncio.

RULES:
- Cue ids are deterministic; every de-duplication decision keys on them
- Nothing in caption_sync.core raises on malformed upstream data
- All state is in memory and rebuilt per capture session
"""

__version__ = "0.1.0"
