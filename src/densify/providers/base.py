"""Abstract backend interface.

All densification backends (CLI tools and HTTP APIs) implement this
interface: a uniform text-in/text-out call plus identity metadata the
engine uses for budgeting and concurrency.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from densify.config import BackendConfig


@dataclass
class ProviderResponse:
    """Raw result of one backend call."""

    text: str
    raw: str | dict = ""
    latency_ms: int = 0


class Provider(ABC):
    """Abstract base class for all densification backends."""

    def __init__(self, name: str, config: BackendConfig, small_window_threshold: int = 16_384):
        self._name = name
        self._config = config
        self._small_window_threshold = small_window_threshold

    @abstractmethod
    async def request_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        model: str | None = None,
        credential: str | None = None,
    ) -> ProviderResponse:
        """Send one prompt and return the backend's text output."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the backend is available and responding."""
        ...

    async def close(self) -> None:
        """Release any held resources (HTTP clients)."""
        return None

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> str:
        return self._config.kind

    @property
    def config(self) -> BackendConfig:
        return self._config

    @property
    def default_model(self) -> str:
        return self._config.model

    @property
    def max_parallel(self) -> int:
        return max(1, self._config.max_parallel)

    @property
    def timeout_seconds(self) -> float:
        return self._config.timeout_seconds

    @property
    def context_window(self) -> int | None:
        """Stated context window in tokens, or None when unknown."""
        return self._config.context_window or None

    @property
    def skips_direct_attempt(self) -> bool:
        """Small fixed-window backends go straight to chunking."""
        window = self.context_window
        return window is not None and window <= self._small_window_threshold

    @property
    def supports_structured_title(self) -> bool:
        return self._config.structured_title

    def resolve_model(self, model: str | None) -> str:
        return model or self._config.model

    def resolve_credential(self, credential: str | None) -> str:
        return credential or self._config.resolved_api_key
