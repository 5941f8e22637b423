"""Thin JSON-over-HTTP client shared by the remote embedding and rerank providers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .errors import ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)


class ProviderHTTPClient:
    """Wraps :class:`httpx.AsyncClient` and maps transport failures to provider errors.

    Cancelling the awaiting task cancels the in-flight request; ``httpx``
    closes the connection and the :class:`asyncio.CancelledError` propagates.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("%s request to %s timed out", self.provider, path)
            raise ProviderTimeout(f"{self.provider} request timed out", provider=self.provider) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"{self.provider} request failed: {exc}", provider=self.provider) from exc

        if response.status_code >= 400:
            error = ProviderError(
                f"{self.provider} returned HTTP {response.status_code}: {response.text[:200]}",
                provider=self.provider,
                details={"status": response.status_code},
            )
            # Rate limits and server hiccups are worth retrying.
            error.retryable = response.status_code == 429 or response.status_code >= 500
            raise error

        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.provider} returned invalid JSON", provider=self.provider) from exc
        if not isinstance(body, dict):
            raise ProviderError(f"{self.provider} returned an unexpected payload", provider=self.provider)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
