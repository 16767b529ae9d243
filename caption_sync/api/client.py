"""Async HTTP client for the translation proxy.

WHY: Cue translation is delegated to a small proxy service that holds the
provider credentials and caches results. The session only needs "send these
cue ids and texts, get back translations". This module hides HTTP details
behind one client class so the runtime and tests never touch httpx directly.

HOW: Uses httpx.AsyncClient for non-blocking HTTP. ProxyTranslationClient is
an async context manager: enter it to open a connection pool, exit to close
it. translate() splits items into proxy-sized batches, POSTs each batch to
/translate, and merges the results into one {cue_id: text} map.

RULES:
- Always use the async context manager (async with ProxyTranslationClient(...) as client:)
- base_url defaults to load_proxy_url() from .env
- Non-2xx responses raise TranslationError carrying the proxy's error envelope
- Retry policy belongs to the caller; this client never retries
- Items with empty ids or text are dropped before sending
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Dict, List, Optional

import httpx

from caption_sync.api.models import (
    ProxyErrorBody,
    TranslationRequest,
    TranslationResponse,
    split_batches,
)
from caption_sync.config import DEFAULT_TARGET_LANG, PROXY_TIMEOUT_S, load_proxy_url
from caption_sync.core.text import normalize_text

logger = logging.getLogger(__name__)


class TranslationError(Exception):
    """Raised when the translation proxy returns an error response.

    WHY: The runtime needs to tell retryable failures (rate limit, upstream
    5xx) from permanent ones (bad request, auth) when it requeues a batch.

    HOW: Wraps the proxy's {"error": {code, message, retryable}} envelope
    and the HTTP status code.

    RULES:
    - Always include code, message, and status_code
    - retryable comes from the proxy; a missing envelope means False
      except for 5xx responses
    - A 200 whose body is not a JSON object raises code BAD_RESPONSE,
      retryable
    """

    def __init__(self, code: str, message: str, retryable: bool = False, status_code: int = 0) -> None:
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"Translation proxy error {status_code} {code}: {message}")


class ProxyTranslationClient:
    """Async client for the translation proxy's /translate endpoint.

    RULES:
    - Use as: async with ProxyTranslationClient() as client: ...
    - target_lang defaults to DEFAULT_TARGET_LANG from config
    - transport is for tests (httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        target_lang: Optional[str] = None,
        source_lang: str = "",
        timeout: float = PROXY_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = (base_url or load_proxy_url()).rstrip("/")
        self._target_lang = target_lang or DEFAULT_TARGET_LANG
        self._source_lang = source_lang
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> ProxyTranslationClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._client:
            await self._client.aclose()
            self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        """Return the active httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError(
                "ProxyTranslationClient must be used as an async context manager: "
                "async with ProxyTranslationClient() as client: ..."
            )
        return self._client

    # ------------------------------------------------------------------
    # Translate
    # ------------------------------------------------------------------

    async def translate(self, items: Iterable[Any]) -> Dict[str, str]:
        """Translate a batch of queue items and return {cue_id: text}.

        WHY: The session hands over whatever CueTranslationQueue.take()
        returned; the proxy has its own per-request item and size limits.

        HOW: Normalizes items (QueueItem or {"id", "text"} dicts), splits
        them with split_batches(), and POSTs each batch in order.

        RULES:
        - Returns {} without a request when there is nothing to send
        - Raises TranslationError on the first failing batch
        - Raises httpx.HTTPError on transport failures

        Args:
            items: QueueItem objects or dicts with "id" and "text".

        Returns:
            Mapping of cue id to translated text for every returned item.
        """
        payload_items = _normalize_items(items)
        if not payload_items:
            return {}

        results: Dict[str, str] = {}
        for batch in split_batches(payload_items):
            results.update(await self._post_batch(batch))
        return results

    async def _post_batch(self, batch: List[Dict[str, str]]) -> Dict[str, str]:
        client = self._ensure_client()
        request = TranslationRequest(
            items=batch,
            target_lang=self._target_lang,
            source_lang=self._source_lang,
        )
        resp = await client.post("/translate", json=request.to_dict())

        if resp.status_code != 200:
            raise _error_from_response(resp)

        try:
            body = resp.json()
        except ValueError as exc:
            raise TranslationError(
                "BAD_RESPONSE", "Proxy returned non-JSON body: %s" % resp.text[:200], True, resp.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise TranslationError(
                "BAD_RESPONSE", "Proxy returned %s, expected an object" % type(body).__name__, True, resp.status_code,
            )

        response = TranslationResponse.from_dict(body)
        logger.debug(
            "Translated %d/%d items (cache=%s)",
            len(response.translations), len(batch), response.meta.get("cache", "-"),
        )
        return response.as_map()

    async def health(self) -> bool:
        """True if GET /health answers 200."""
        client = self._ensure_client()
        try:
            resp = await client.get("/health")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200


# ---------------------------------------------------------------------------
# Helpers (module-private)
# ---------------------------------------------------------------------------


def _normalize_items(items: Iterable[Any]) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    for item in items or ():
        if isinstance(item, dict):
            cue_id, text = item.get("id"), item.get("text")
        else:
            cue_id, text = getattr(item, "id", None), getattr(item, "text", None)
        key = str(cue_id or "").strip()
        value = normalize_text(text)
        if key and value:
            out.append({"id": key, "text": value})
    return out


def _error_from_response(resp: httpx.Response) -> TranslationError:
    try:
        body = ProxyErrorBody.from_dict(resp.json())
    except ValueError:
        body = ProxyErrorBody(message=resp.text)
    retryable = body.retryable or (resp.status_code >= 500 and body.code == "UNKNOWN")
    return TranslationError(body.code, body.message or resp.text, retryable, resp.status_code)
