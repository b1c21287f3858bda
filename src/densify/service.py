"""Densification service: the entry point callers use for one capture.

Checks the input ceiling before any backend call, runs the orchestrator
for the chosen backend under the caller-layer retry policy, and fills in
a missing title through the naming service when configured to.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from densify.config import EngineConfig
from densify.engine.limiter import BackendWorkLimiter
from densify.engine.orchestrator import DensificationOrchestrator
from densify.engine.request import DensificationRequest, DensificationResult
from densify.exceptions import EmptyInputError, InputTooLongError
from densify.naming import NamingService
from densify.prompts.assembler import PromptAssembler
from densify.providers.registry import ProviderRegistry
from densify.providers.retry import ProviderRetryPolicy, call_with_provider_retry
from densify.utils.tokens import estimate_tokens

logger = logging.getLogger(__name__)


def fallback_title(request: DensificationRequest) -> str:
    return request.window_title.strip() or request.app_name.strip() or "Untitled snapshot"


class DensificationService:
    """Densifies captures against configured backends."""

    def __init__(
        self,
        registry: ProviderRegistry,
        limiter: BackendWorkLimiter,
        prompts: PromptAssembler,
        *,
        settings: EngineConfig | None = None,
        retry_policy: ProviderRetryPolicy | None = None,
        naming: NamingService | None = None,
        resolve_titles: bool = False,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ):
        self._registry = registry
        self._limiter = limiter
        self._prompts = prompts
        self._settings = settings or EngineConfig()
        self._retry_policy = retry_policy or ProviderRetryPolicy()
        self._naming = naming
        self._resolve_titles = resolve_titles
        self._event_hook = event_hook

    def check_input(self, request: DensificationRequest) -> int:
        """Return the input's token estimate, or raise if it cannot be densified."""
        if not request.input_text.strip():
            raise EmptyInputError()
        estimated = estimate_tokens(request.input_text)
        if estimated > self._settings.max_input_tokens:
            raise InputTooLongError(estimated, self._settings.max_input_tokens)
        return estimated

    async def densify(
        self,
        request: DensificationRequest,
        backend: str,
        model: str | None = None,
        credential: str | None = None,
    ) -> DensificationResult:
        estimated = self.check_input(request)
        provider = self._registry.get(backend)
        orchestrator = DensificationOrchestrator(
            provider,
            limiter=self._limiter,
            prompts=self._prompts,
            settings=self._settings,
            event_hook=self._event_hook,
        )
        logger.info(
            "Densifying %d-token capture from %s with %s",
            estimated, request.app_name or "unknown app", backend,
        )

        def _on_failure(attempt: int, max_attempts: int, error: BaseException, remaining: int) -> None:
            if remaining:
                logger.warning(
                    "Densification with %s failed (attempt %d/%d), retrying: %s",
                    backend, attempt, max_attempts, error,
                )
            else:
                logger.error(
                    "Densification with %s failed (attempt %d/%d): %s",
                    backend, attempt, max_attempts, error,
                )

        result = await call_with_provider_retry(
            lambda: orchestrator.densify(request, model=model, credential=credential),
            policy=self._retry_policy,
            on_failure=_on_failure,
        )

        if result.title is None and self._resolve_titles and self._naming is not None:
            result.title = await self._naming.suggest_snapshot_title(
                provider,
                request,
                result.content,
                fallback=fallback_title(request),
                model=model,
                credential=credential,
            )
        return result
