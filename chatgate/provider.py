"""Inference provider clients.

The gateway depends only on the :class:`InferenceProvider` protocol:
``run()`` returns an async iterable over the provider's raw response bytes
or raises before yielding anything.  When the iterable carries a
``media_type`` attribute, that upstream content type is relayed with it.
The bytes are relayed as-is, so their format (newline-delimited ``data:``
JSON chunks carrying ``response`` fragments, for Workers AI) is the
provider's business.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Protocol

import httpx

from .config import ProviderSettings

logger = logging.getLogger("chatgate.provider")


class ProviderError(Exception):
    """The inference provider refused or failed a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderStream:
    """Raw bytes of an upstream response, closed once exhausted."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self.media_type: str | None = response.headers.get("content-type")

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._relay()

    async def _relay(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        finally:
            await self.response.aclose()


class InferenceProvider(Protocol):
    async def run(self, model: str, inputs: dict) -> AsyncIterable[bytes]: ...

    async def close(self) -> None: ...


class WorkersAIProvider:
    """Cloudflare Workers AI over its REST API, streaming enabled."""

    def __init__(
        self,
        settings: ProviderSettings,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=settings.base_url, timeout=settings.timeout
        )

    async def close(self) -> None:
        await self.client.aclose()

    async def run(self, model: str, inputs: dict) -> ProviderStream:
        if not self.settings.configured:
            raise ProviderError("Workers AI account id and API token are not configured")

        request = self.client.build_request(
            "POST",
            f"/accounts/{self.settings.account_id}/ai/run/{model}",
            json={**inputs, "stream": True},
            headers={"Authorization": f"Bearer {self.settings.api_token}"},
        )
        response = await self.client.send(request, stream=True)
        if response.is_error:
            detail = (await response.aread())[:500]
            await response.aclose()
            logger.debug("Workers AI error body: %r", detail)
            raise ProviderError(
                f"Workers AI returned HTTP {response.status_code} for {model}",
                status_code=response.status_code,
            )
        return ProviderStream(response)
