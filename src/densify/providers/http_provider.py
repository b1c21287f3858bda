"""Shared plumbing for HTTP-backed providers.

Owns the lazily created ``httpx.AsyncClient`` and maps transport and
status failures onto the provider exception tree so the orchestrator can
classify them from their text.
"""

from __future__ import annotations

import logging
import time
from abc import abstractmethod
from typing import Any

import httpx

from densify.config import BackendConfig
from densify.exceptions import (
    ProviderRequestFailed,
    ProviderRequestTimedOut,
    ProviderRequestTransientFailure,
)
from densify.providers.base import Provider, ProviderResponse
from densify.providers.parsing import clean_error_message, extract_error_message, parse_json

logger = logging.getLogger(__name__)


class HTTPProvider(Provider):
    """Base class for providers speaking JSON over HTTP."""

    DEFAULT_BASE_URL = ""

    def __init__(
        self,
        name: str,
        config: BackendConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        small_window_threshold: int = 16_384,
    ):
        super().__init__(name, config, small_window_threshold)
        self._base_url = (config.base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def _build_request(
        self,
        prompt: str,
        system_instruction: str | None,
        model: str,
        credential: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (path, headers, json body) for one completion call."""
        ...

    @abstractmethod
    def _extract_text(self, data: dict[str, Any]) -> str:
        """Pull the generated text out of a successful response body."""
        ...

    async def request_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        model: str | None = None,
        credential: str | None = None,
    ) -> ProviderResponse:
        path, headers, body = self._build_request(
            prompt,
            system_instruction,
            self.resolve_model(model),
            self.resolve_credential(credential),
        )
        client = self._get_client()
        start = time.monotonic()
        try:
            response = await client.post(path, json=body, headers=headers)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderRequestTimedOut(self.name, self.timeout_seconds) from e
        except httpx.ConnectError as e:
            raise ProviderRequestTransientFailure(
                f"Cannot connect to {self.name} at {self._base_url}: {e}"
            ) from e
        except httpx.HTTPStatusError as e:
            details = self._status_error_details(e.response)
            logger.debug("%s request failed: %s", self.name, details)
            raise ProviderRequestFailed(details) from e
        except httpx.TransportError as e:
            raise ProviderRequestTransientFailure(
                f"{self.name} connection error: {e}"
            ) from e
        latency = int((time.monotonic() - start) * 1000)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderRequestFailed(
                f"{self.name} returned a non-JSON response body."
            ) from e

        text = self._extract_text(data if isinstance(data, dict) else {}).strip()
        if not text:
            raise ProviderRequestFailed(f"{self.name} returned empty output.")
        return ProviderResponse(text=text, raw=data, latency_ms=latency)

    def _status_error_details(self, response: httpx.Response) -> str:
        body = response.text or ""
        structured = extract_error_message(parse_json(body))
        detail = structured or clean_error_message(body) or response.reason_phrase
        return f"{self.name} returned HTTP {response.status_code}: {detail}"

    async def health_check(self) -> bool:
        try:
            response = await self._get_client().get(self._health_path())
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    def _health_path(self) -> str:
        return "/"
