"""Pydantic models for inbound bridge messages.

WHY: The capture side posts loosely-typed JSON (camelCase keys, optional
fields, numbers that may arrive as strings). Validating at the boundary
means the session only ever sees one of two well-typed payloads, and
anything else is dropped before it can corrupt track state.

HOW: Two models share the message channel:
  TimedTextPayload  — a captured timedtext response with its events
  ParseErrorPayload — the capture side failed to parse a response
parse_bridge_message() picks the right model and returns None for
anything that validates as neither.

RULES:
- Field names are snake_case; camelCase aliases match the wire format
- Unknown keys are ignored
- events stay raw dicts; TimedEvent.from_raw() coerces them later
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

TRACK_SIGNATURE_CHARS = 32


class TimedTextPayload(BaseModel):
    """One captured timedtext response.

    RULES:
    - url and response_hash together identify a response for dedupe
    - track_signature distinguishes tracks that share a language
    - received_at is the capture-side clock in ms (0 when absent)
    """

    url: str = Field(default="", description="Request URL the response was captured from.")
    track_lang: str = Field(default="", alias="trackLang", description="Caption track language code.")
    is_asr: bool = Field(default=False, alias="isAsr", description="True for auto-generated (ASR) tracks.")
    track_signature: str = Field(
        default="",
        alias="trackSignature",
        description="Opaque track identity; only the first 32 characters are used.",
    )
    events: List[Any] = Field(
        default_factory=list,
        description="Raw json3 events (tStartMs, dDurationMs, aAppend, segs).",
    )
    response_hash: str = Field(
        default="",
        alias="responseHash",
        description="Hash of the response body, used for dedupe.",
    )
    received_at: int = Field(default=0, alias="receivedAt", description="Capture time in ms.")

    model_config = {"populate_by_name": True}

    @property
    def dedupe_key(self) -> str:
        return f"{self.url}::{self.response_hash}"

    @property
    def track_key(self) -> str:
        """Track identity: "{lang or auto}::{asr|track}::{signature[:32]}"."""
        lang = (self.track_lang or "auto").lower()
        kind = "asr" if self.is_asr else "track"
        return f"{lang}::{kind}::{self.track_signature[:TRACK_SIGNATURE_CHARS]}"


class ParseErrorPayload(BaseModel):
    """The capture side could not parse a response."""

    parse_error: bool = Field(alias="parseError", description="Always true for this payload.")
    consecutive_parse_errors: int = Field(
        default=1,
        alias="consecutiveParseErrors",
        description="Consecutive failures counted by the capture side.",
    )
    url: Optional[str] = Field(default=None, description="Request URL, if known.")
    received_at: int = Field(default=0, alias="receivedAt", description="Capture time in ms.")

    model_config = {"populate_by_name": True}


BridgeMessage = Union[TimedTextPayload, ParseErrorPayload]


def parse_bridge_message(data: Any) -> Optional[BridgeMessage]:
    """Validate one inbound message.

    Returns a ParseErrorPayload when parseError is truthy, a
    TimedTextPayload for anything else that validates, or None.
    """
    if isinstance(data, (TimedTextPayload, ParseErrorPayload)):
        return data
    if not isinstance(data, dict):
        logger.debug("Dropped non-object bridge message: %r", type(data).__name__)
        return None

    try:
        if data.get("parseError"):
            return ParseErrorPayload.model_validate(data)
        return TimedTextPayload.model_validate(data)
    except ValidationError as exc:
        logger.debug("Dropped invalid bridge message: %s", exc.errors()[:1])
        return None
