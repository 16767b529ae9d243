"""Cue translation queue: pending → inflight → translated.

WHY: Cue builders re-run on every new payload and re-emit the same cues
many times. The queue makes sure each cue id is sent for translation at
most once at a time, and never again once it has a translation.

HOW: Three collections keyed by cue id:
  pending    — ordered, waiting to be taken (insertion order is send order)
  inflight   — taken and not yet resolved
  translated — terminal; only grows until reset()

RULES:
- The three collections are disjoint
- A translated id is never re-enqueued or re-queued
- take() never hands out an id that is inflight or translated
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from caption_sync.core.text import normalize_text


@dataclass(frozen=True)
class QueueItem:
    """One unit of translation work: a cue id and its source text."""

    id: str
    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "text": self.text}


def _key(value: Optional[str]) -> str:
    return str(value or "").strip()


class CueTranslationQueue:

    def __init__(self) -> None:
        self.pending: "OrderedDict[str, str]" = OrderedDict()
        self.inflight: Dict[str, str] = {}
        self.translated: Set[str] = set()

    def enqueue(self, cue_id: Optional[str], text: Optional[str]) -> bool:
        """Add a cue to pending. Returns False for empty input or translated ids.

        Re-enqueueing a pending id updates its text but keeps its position.
        An inflight id is left alone (returns False) until it is resolved,
        requeued, or released.
        """
        key = _key(cue_id)
        value = normalize_text(text)
        if not key or not value or key in self.translated:
            return False
        if key in self.inflight:
            return False
        self.pending[key] = value
        return True

    def take(self, max_items: int = 1) -> List[QueueItem]:
        """Move up to max_items (floored at 1) from pending to inflight."""
        limit = max(1, int(max_items or 1))
        batch: List[QueueItem] = []
        for cue_id, text in self.pending.items():
            if len(batch) >= limit:
                break
            if cue_id in self.inflight or cue_id in self.translated:
                continue
            batch.append(QueueItem(cue_id, text))

        for item in batch:
            del self.pending[item.id]
            self.inflight[item.id] = item.text
        return batch

    def mark_translated(self, ids: Iterable[str]) -> None:
        for cue_id in ids or ():
            key = _key(cue_id)
            if not key:
                continue
            self.translated.add(key)
            self.pending.pop(key, None)
            self.inflight.pop(key, None)

    def clear_inflight(self, ids: Iterable[str]) -> None:
        """Release inflight ids without translating or re-queueing them."""
        for cue_id in ids or ():
            key = _key(cue_id)
            if key:
                self.inflight.pop(key, None)

    def requeue(self, items: Iterable[QueueItem]) -> None:
        """Return a failed batch to pending. Translated ids are skipped."""
        for item in items or ():
            key = _key(item.id)
            text = normalize_text(item.text)
            if not key or not text or key in self.translated:
                continue
            self.inflight.pop(key, None)
            self.pending[key] = text

    def has_pending(self) -> bool:
        return bool(self.pending)

    def has_translated(self, cue_id: Optional[str]) -> bool:
        return _key(cue_id) in self.translated

    def pending_size(self) -> int:
        return len(self.pending)

    def inflight_size(self) -> int:
        return len(self.inflight)

    def reset(self) -> None:
        self.pending.clear()
        self.inflight.clear()
        self.translated.clear()
