"""Translation proxy request and response dataclasses.

WHY: The proxy speaks plain JSON. Typed dataclasses make the request shape
and the two response shapes (translations, error envelope) explicit and
keep dict-poking out of the client.

HOW: Each dataclass maps 1:1 to a proxy JSON object. from_dict() factory
methods parse raw responses; to_dict() builds request bodies.

RULES:
- Item ids are cue ids; the proxy echoes them back unchanged
- Items with an empty translated text are kept; callers decide what to do
- source_lang is omitted from the request body when empty
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

MAX_ITEMS_PER_BATCH = 40
MAX_CHARS_PER_BATCH = 12_000


@dataclass
class TranslationRequest:
    """Body of POST /translate."""

    items: List[Dict[str, str]]
    target_lang: str
    source_lang: str = ""

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "items": [{"id": item["id"], "text": item["text"]} for item in self.items],
            "target_lang": self.target_lang.strip().upper(),
        }
        if self.source_lang.strip():
            body["source_lang"] = self.source_lang.strip().upper()
        return body


@dataclass
class TranslatedItem:
    """One translated item from the proxy response."""

    id: str
    text: str
    detected_source_language: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> TranslatedItem:
        return cls(
            id=str(data.get("id", "")),
            text=str(data.get("text") or ""),
            detected_source_language=str(data.get("detected_source_language") or ""),
        )


@dataclass
class TranslationResponse:
    """Successful proxy response: {"translations": [...], "meta": {...}}."""

    translations: List[TranslatedItem] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> TranslationResponse:
        raw_items = data.get("translations")
        items = [
            TranslatedItem.from_dict(item)
            for item in (raw_items if isinstance(raw_items, list) else [])
            if isinstance(item, dict)
        ]
        meta = data.get("meta")
        return cls(translations=items, meta=meta if isinstance(meta, dict) else {})

    def as_map(self) -> Dict[str, str]:
        """Return {cue_id: translated_text}, skipping empty ids."""
        return {item.id: item.text for item in self.translations if item.id}


@dataclass
class ProxyErrorBody:
    """Error envelope: {"error": {"code", "message", "retryable"}}."""

    code: str = "UNKNOWN"
    message: str = ""
    retryable: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> ProxyErrorBody:
        error = data.get("error") if isinstance(data, dict) else None
        if not isinstance(error, dict):
            return cls()
        return cls(
            code=str(error.get("code") or "UNKNOWN"),
            message=str(error.get("message") or ""),
            retryable=bool(error.get("retryable")),
        )


def split_batches(
    items: List[Dict[str, str]],
    max_items: int = MAX_ITEMS_PER_BATCH,
    max_chars: int = MAX_CHARS_PER_BATCH,
) -> List[List[Dict[str, str]]]:
    """Split items into proxy-sized batches by count and total characters.

    An item larger than max_chars on its own still gets a batch of one.
    """
    batches: List[List[Dict[str, str]]] = []
    current: List[Dict[str, str]] = []
    chars = 0
    for item in items:
        size = len(item.get("text", ""))
        if current and (len(current) >= max_items or chars + size > max_chars):
            batches.append(current)
            current, chars = [], 0
        current.append(item)
        chars += size
    if current:
        batches.append(current)
    return batches
