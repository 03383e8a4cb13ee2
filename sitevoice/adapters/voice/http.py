"""
JSON-over-HTTP base client for remote speech providers.

Maps transport failures and HTTP status codes onto the provider error
taxonomy so the stage adapters and the orchestrator never see httpx
exceptions:

    connect error / DNS          -> ProviderUnreachable (adapter falls back)
    timeout                      -> ProviderTimeout (retried)
    read error / protocol error  -> TransientNetworkError (retried)
    401, 403                     -> ProviderAuthFailed (escalated)
    429                          -> ProviderQuotaExceeded (Retry-After honoured)
    5xx                          -> TransientNetworkError (retried)
    other 4xx, undecodable body  -> InvalidProviderResponse
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from sitevoice.core.errors import (
    InvalidProviderResponse,
    ProviderAuthFailed,
    ProviderError,
    ProviderQuotaExceeded,
    ProviderTimeout,
    ProviderUnreachable,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0


def parse_retry_after(value: Optional[str], default: float = 1.0) -> float:
    """Retry-After header in seconds (HTTP-date values fall back to the default)."""
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        return default


def raise_for_status(response: httpx.Response, provider: str) -> None:
    """Raises the matching ProviderError for a non-2xx response."""
    status = response.status_code
    if status < 400:
        return
    if status in (401, 403):
        raise ProviderAuthFailed(f"{provider}: credentials rejected (HTTP {status})", provider)
    if status == 429:
        raise ProviderQuotaExceeded(
            f"{provider}: quota exceeded",
            provider,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        raise TransientNetworkError(f"{provider}: server error (HTTP {status})", provider)
    raise InvalidProviderResponse(f"{provider}: request rejected (HTTP {status})", provider)


class HTTPProviderClient:
    """
    Thin httpx.AsyncClient wrapper shared by the remote providers.

    The client is created lazily and can be injected (tests pass one built on
    httpx.MockTransport).
    """

    def __init__(
        self,
        base_url: str,
        provider: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.provider = provider
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def request(
        self,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """POST to the provider and return a successful response."""
        client = await self._get_client()
        try:
            response = await client.post(
                path,
                json=json,
                content=content,
                params=params,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(
                f"{self.provider}: request timed out after {self.timeout}s", self.provider
            ) from e
        except httpx.ConnectError as e:
            raise ProviderUnreachable(f"{self.provider}: cannot connect ({e})", self.provider) from e
        except (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError) as e:
            raise TransientNetworkError(f"{self.provider}: connection dropped ({e})", self.provider) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider}: {e}", self.provider) from e

        raise_for_status(response, self.provider)
        return response

    async def post_json(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        """POST and decode a JSON object body."""
        response = await self.request(path, **kwargs)
        try:
            data = response.json()
        except ValueError as e:
            raise InvalidProviderResponse(f"{self.provider}: body is not JSON", self.provider) from e
        if not isinstance(data, dict):
            raise InvalidProviderResponse(f"{self.provider}: expected a JSON object", self.provider)
        return data

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
