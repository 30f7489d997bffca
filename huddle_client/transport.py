from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import PermanentDeliveryError, TransientDeliveryError
from .models import QueueItem

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
# 401 is an expired token; the caller refreshes ``headers`` and the item retries
RETRYABLE_4XX = {401, 408, 429}


class HttpResponseTransport:
    """
    Delivers queue items to ``POST {base_url}/api/surveys/{assignment_id}/responses/``.

    Network errors, timeouts, 5xx, 401, 408 and 429 raise TransientDeliveryError;
    every other 4xx raises PermanentDeliveryError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    def url_for(self, item: QueueItem) -> str:
        return f"{self.base_url}/api/surveys/{item.assignment_id}/responses/"

    async def deliver(self, item: QueueItem) -> Dict[str, Any]:
        payload = {
            "local_id": item.local_id,
            "survey_id": item.survey_id,
            "answers": item.answers,
            "metadata": item.metadata,
        }
        try:
            resp = await self._get_client().post(
                self.url_for(item), json=payload, headers=self.headers, timeout=self.timeout,
            )
        except httpx.TimeoutException as e:
            raise TransientDeliveryError(f"Timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientDeliveryError(f"Network error: {e}") from e

        code = resp.status_code
        if code < 300:
            try:
                return resp.json()
            except ValueError:
                return {}
        body = _json_or_empty(resp)
        detail = body.get("detail") or resp.reason_phrase or f"HTTP {code}"
        if code >= 500 or code in RETRYABLE_4XX:
            raise TransientDeliveryError(detail, status_code=code, reason=body.get("reason"))
        raise PermanentDeliveryError(detail, status_code=code, reason=body.get("reason"))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def _json_or_empty(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
