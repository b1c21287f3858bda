"""Shared test fixtures for Densify."""

from __future__ import annotations

import asyncio
import inspect
import re
from collections.abc import Callable

import pytest

from densify.config import BackendConfig, Config, EngineConfig
from densify.engine.limiter import BackendWorkLimiter
from densify.prompts.assembler import PromptAssembler
from densify.providers.base import Provider, ProviderResponse

_PART = re.compile(r"\(part (\d+) of (\d+)\)")


def prompt_kind(prompt: str) -> str:
    """Tell densification prompts apart by their opening line."""
    if prompt.startswith("You are compressing one part"):
        return "chunk"
    if prompt.startswith("You are combining dense partial notes"):
        return "merge"
    if prompt.startswith("You are compressing captured"):
        return "direct"
    return "other"


def chunk_position(prompt: str) -> tuple[int, int]:
    """(index, total) of a chunk prompt."""
    match = _PART.search(prompt)
    assert match, "not a chunk prompt"
    return int(match.group(1)), int(match.group(2))


class FakeProvider(Provider):
    """Provider whose answers come from a plain function of the prompt.

    ``responder`` may return a string, an awaitable of one, or raise.
    Tracks every prompt and the peak number of concurrent calls.
    """

    def __init__(
        self,
        responder: Callable[[str], object] | None = None,
        *,
        name: str = "fake",
        max_parallel: int = 2,
        context_window: int = 0,
        structured_title: bool = False,
        model: str = "fake-model",
    ):
        config = BackendConfig(
            kind="openai",
            model=model,
            max_parallel=max_parallel,
            context_window=context_window,
            structured_title=structured_title,
        )
        super().__init__(name, config)
        self._responder = responder or (lambda prompt: "dense text")
        self.prompts: list[str] = []
        self.system_instructions: list[str | None] = []
        self.active = 0
        self.peak = 0
        self.closed = False

    @property
    def kinds(self) -> list[str]:
        return [prompt_kind(p) for p in self.prompts]

    async def request_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        model: str | None = None,
        credential: str | None = None,
    ) -> ProviderResponse:
        self.prompts.append(prompt)
        self.system_instructions.append(system_instruction)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0)
            result = self._responder(prompt)
            if inspect.isawaitable(result):
                result = await result
            return ProviderResponse(text=str(result))
        finally:
            self.active -= 1

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True


def paragraph(word: str, count: int) -> str:
    return " ".join([word] * count)


@pytest.fixture
def config() -> Config:
    """Provide a test configuration with one fake-friendly backend."""
    return Config(
        engine=EngineConfig(),
        backends={"local": BackendConfig(kind="ollama", model="llama3", context_window=8192)},
    )


@pytest.fixture
def limiter() -> BackendWorkLimiter:
    return BackendWorkLimiter()


@pytest.fixture
def prompts() -> PromptAssembler:
    return PromptAssembler()
