"""Application runtime: owns the process-wide limiter and every service.

Create one runtime per process and hand its services to callers; the
limiter inside it is the single throttle for each backend.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from densify.config import Config
from densify.engine.limiter import BackendWorkLimiter
from densify.naming import NamingService
from densify.prompts.assembler import PromptAssembler
from densify.providers.registry import ProviderRegistry
from densify.providers.retry import ProviderRetryPolicy
from densify.service import DensificationService

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Container for the components of one densify process."""

    config: Config
    limiter: BackendWorkLimiter
    registry: ProviderRegistry
    prompts: PromptAssembler
    naming: NamingService
    service: DensificationService

    async def health(self) -> dict[str, bool]:
        return await self.registry.health(self.limiter)

    async def close(self) -> None:
        await self.registry.close()


def create_runtime(
    config: Config,
    *,
    registry: ProviderRegistry | None = None,
    event_hook: Callable[[dict[str, Any]], None] | None = None,
) -> Runtime:
    """Create and wire all densify components."""
    limiter = BackendWorkLimiter()
    registry = registry or ProviderRegistry.from_config(config)
    prompts = PromptAssembler()
    naming = NamingService(
        limiter,
        prompts,
        max_title_chars=config.naming.max_title_chars,
        event_hook=event_hook,
    )
    service = DensificationService(
        registry,
        limiter,
        prompts,
        settings=config.engine,
        retry_policy=ProviderRetryPolicy.from_config(config.retry),
        naming=naming,
        resolve_titles=config.naming.resolve_titles,
        event_hook=event_hook,
    )
    logger.debug("Runtime created with backends: %s", ", ".join(registry.names()) or "none")
    return Runtime(
        config=config,
        limiter=limiter,
        registry=registry,
        prompts=prompts,
        naming=naming,
        service=service,
    )
