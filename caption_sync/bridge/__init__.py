"""Inbound bridge payload schema.

WHY: Captured caption responses reach the session as messages from another
execution context. The schema is the only contract between the two sides.

HOW: Pydantic models in models.py validate each message; parse_bridge_message()
is the single entry point.
"""

from caption_sync.bridge.models import ParseErrorPayload, TimedTextPayload, parse_bridge_message

__all__ = ["ParseErrorPayload", "TimedTextPayload", "parse_bridge_message"]
