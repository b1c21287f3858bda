"""Provider registry: builds backends from configuration and looks them up by name."""

from __future__ import annotations

import logging

from densify.config import BackendConfig, Config
from densify.engine.limiter import BackendWorkLimiter
from densify.exceptions import ProviderNotConfiguredError
from densify.providers.anthropic_provider import AnthropicProvider
from densify.providers.base import Provider
from densify.providers.cli_provider import CLIProvider
from densify.providers.ollama_provider import OllamaProvider
from densify.providers.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one provider instance per configured backend name."""

    def __init__(self, providers: dict[str, Provider] | None = None):
        self._providers: dict[str, Provider] = providers or {}

    @classmethod
    def from_config(cls, config: Config) -> ProviderRegistry:
        """Create a registry from configuration, instantiating all providers."""
        threshold = config.engine.small_window_threshold
        registry = cls()
        for name, backend in config.backends.items():
            registry.add_provider(name, _create_provider(name, backend, threshold))
        return registry

    def add_provider(self, name: str, provider: Provider) -> None:
        """Register a provider at runtime."""
        self._providers[name] = provider

    def get(self, name: str) -> Provider:
        provider = self._providers.get(name)
        if provider is None:
            configured = ", ".join(sorted(self._providers)) or "none"
            raise ProviderNotConfiguredError(
                f"No backend configured named '{name}' (configured: {configured})"
            )
        return provider

    def names(self) -> list[str]:
        return list(self._providers)

    def list_providers(self) -> list[dict]:
        """List all registered providers with their metadata."""
        result = []
        for name, provider in self._providers.items():
            result.append({
                "name": name,
                "kind": provider.kind,
                "model": provider.default_model,
                "max_parallel": provider.max_parallel,
                "context_window": provider.context_window,
            })
        return result

    async def health(self, limiter: BackendWorkLimiter) -> dict[str, bool]:
        """Check every backend, each through its shared concurrency slot."""
        results = {}
        for name, provider in self._providers.items():
            try:
                async with limiter.slot(name, provider.max_parallel):
                    results[name] = await provider.health_check()
            except Exception as e:
                logger.warning("Health check for %s failed: %s", name, e)
                results[name] = False
        return results

    async def close(self) -> None:
        """Close all provider HTTP clients."""
        for provider in self._providers.values():
            await provider.close()


def _create_provider(name: str, config: BackendConfig, threshold: int) -> Provider:
    """Create a provider from configuration."""
    if config.is_cli:
        return CLIProvider(name, config, small_window_threshold=threshold)
    if config.kind == "openai":
        return OpenAIProvider(name, config, small_window_threshold=threshold)
    if config.kind == "anthropic":
        return AnthropicProvider(name, config, small_window_threshold=threshold)
    if config.kind == "ollama":
        return OllamaProvider(name, config, small_window_threshold=threshold)
    raise ProviderNotConfiguredError(f"Unknown backend kind '{config.kind}' for {name}")
