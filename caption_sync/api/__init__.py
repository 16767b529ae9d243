"""Translation proxy client package — async HTTP interface to the translation proxy.

WHY: Cues are translated by an external proxy service. This package
encapsulates all proxy communication behind an async client class.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. ProxyTranslationClient
sends batches to POST /translate. Request and response bodies are typed
dataclasses defined in models.py.

RULES:
- All HTTP calls go through ProxyTranslationClient (no direct httpx usage elsewhere)
- The proxy URL comes from config (CAPTION_SYNC_PROXY_URL)
"""

from caption_sync.api.client import ProxyTranslationClient, TranslationError
from caption_sync.api.models import TranslatedItem, TranslationRequest, TranslationResponse

__all__ = [
    "ProxyTranslationClient",
    "TranslatedItem",
    "TranslationError",
    "TranslationRequest",
    "TranslationResponse",
]
