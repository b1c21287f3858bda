"""Title suggestions for snapshots and contexts.

Naming is best effort: an empty answer or a failed call yields the
caller's fallback title.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from densify.engine.limiter import BackendWorkLimiter
from densify.engine.request import DensificationRequest
from densify.exceptions import DensifyError
from densify.prompts.assembler import PromptAssembler
from densify.providers.base import Provider

logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 80
CONTEXT_TITLE_SNAPSHOTS = 4


def normalize_title(value: str | None, fallback: str, max_chars: int = MAX_TITLE_CHARS) -> str:
    cleaned = (value or "").replace("\n", " ").replace('"', "").strip()
    if not cleaned:
        return fallback
    return cleaned[:max_chars]


class NamingService:
    """Asks a backend for short titles, through the shared limiter."""

    def __init__(
        self,
        limiter: BackendWorkLimiter,
        prompts: PromptAssembler,
        *,
        max_title_chars: int = MAX_TITLE_CHARS,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ):
        self._limiter = limiter
        self._prompts = prompts
        self._max_title_chars = max_title_chars
        self._event_hook = event_hook

    async def suggest_snapshot_title(
        self,
        provider: Provider,
        request: DensificationRequest,
        dense_content: str,
        *,
        fallback: str,
        model: str | None = None,
        credential: str | None = None,
    ) -> str:
        prompt = self._prompts.build_snapshot_title_prompt(request, dense_content)
        raw = await self._request_text(provider, prompt, model, credential, kind="snapshot")
        return normalize_title(raw, fallback, self._max_title_chars)

    async def suggest_context_title(
        self,
        provider: Provider,
        dense_contents: Sequence[str],
        *,
        fallback: str,
        model: str | None = None,
        credential: str | None = None,
    ) -> str:
        """Title a context from its most recent snapshots' dense content."""
        numbered = list(enumerate(dense_contents, start=1))[-CONTEXT_TITLE_SNAPSHOTS:]
        if not numbered:
            return fallback
        prompt = self._prompts.build_context_title_prompt(numbered)
        raw = await self._request_text(provider, prompt, model, credential, kind="context")
        return normalize_title(raw, fallback, self._max_title_chars)

    async def _request_text(
        self,
        provider: Provider,
        prompt: str,
        model: str | None,
        credential: str | None,
        *,
        kind: str,
    ) -> str | None:
        try:
            async with self._limiter.slot(provider.name, provider.max_parallel):
                response = await provider.request_text(
                    prompt,
                    system_instruction=self._prompts.naming_system_instruction(),
                    model=model,
                    credential=credential,
                )
        except DensifyError as e:
            logger.warning("Title request to %s failed: %s", provider.name, e)
            self._emit(provider.name, kind, ok=False, error=str(e))
            return None
        self._emit(provider.name, kind, ok=True)
        return response.text

    def _emit(self, backend: str, kind: str, **details: Any) -> None:
        if not callable(self._event_hook):
            return
        payload: dict[str, Any] = {"backend": backend, "phase": f"title_{kind}"}
        payload.update(details)
        try:
            self._event_hook(payload)
        except Exception as exc:
            logger.debug("Naming event hook failed: %s", exc)
