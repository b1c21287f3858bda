"""Tests for the densification service entry point."""

from __future__ import annotations

import json

import pytest
from conftest import FakeProvider, paragraph

from densify.config import EngineConfig
from densify.engine.request import DensificationRequest
from densify.exceptions import (
    EmptyInputError,
    InputTooLongError,
    ProviderNotConfiguredError,
    ProviderRequestFailed,
)
from densify.naming import NamingService
from densify.providers.registry import ProviderRegistry
from densify.providers.retry import ProviderRetryPolicy
from densify.service import DensificationService, fallback_title

NO_DELAY = ProviderRetryPolicy(max_attempts=2, base_delay_seconds=0.0, jitter_seconds=0.0)


def _service(provider, limiter, prompts, **kwargs) -> DensificationService:
    registry = ProviderRegistry({provider.name: provider})
    kwargs.setdefault("retry_policy", NO_DELAY)
    return DensificationService(registry, limiter, prompts, **kwargs)


class TestDensificationService:
    @pytest.mark.asyncio
    async def test_densify(self, limiter, prompts):
        provider = FakeProvider(lambda p: "dense")
        result = await _service(provider, limiter, prompts).densify(
            DensificationRequest(input_text="hello world", app_name="Mail"), "fake",
        )
        assert result.content == "dense"
        assert result.title is None

    @pytest.mark.asyncio
    async def test_input_over_ceiling_makes_no_call(self, limiter, prompts):
        provider = FakeProvider()
        service = _service(provider, limiter, prompts, settings=EngineConfig(max_input_tokens=100))
        with pytest.raises(InputTooLongError) as exc_info:
            await service.densify(DensificationRequest(input_text=paragraph("word", 200)), "fake")
        assert exc_info.value.limit == 100
        assert provider.prompts == []

    @pytest.mark.asyncio
    async def test_empty_input(self, limiter, prompts):
        with pytest.raises(EmptyInputError):
            await _service(FakeProvider(), limiter, prompts).densify(
                DensificationRequest(input_text="   "), "fake",
            )

    @pytest.mark.asyncio
    async def test_unknown_backend(self, limiter, prompts):
        with pytest.raises(ProviderNotConfiguredError, match="configured: fake"):
            await _service(FakeProvider(), limiter, prompts).densify(
                DensificationRequest(input_text="x"), "missing",
            )

    @pytest.mark.asyncio
    async def test_rate_limit_retried_once(self, limiter, prompts):
        calls = {"count": 0}

        def respond(prompt: str) -> str:
            calls["count"] += 1
            if calls["count"] == 1:
                raise ProviderRequestFailed("429 Too Many Requests")
            return "dense"

        result = await _service(FakeProvider(respond), limiter, prompts).densify(
            DensificationRequest(input_text="x"), "fake",
        )
        assert result.content == "dense"
        assert calls["count"] == 2

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self, limiter, prompts):
        def respond(prompt: str):
            raise ProviderRequestFailed("bad")

        provider = FakeProvider(respond)
        with pytest.raises(ProviderRequestFailed, match="bad"):
            await _service(provider, limiter, prompts).densify(
                DensificationRequest(input_text="x"), "fake",
            )
        assert len(provider.prompts) == 1

    @pytest.mark.asyncio
    async def test_resolves_missing_title(self, limiter, prompts):
        def respond(prompt: str) -> str:
            if prompt.startswith("Create a short snapshot title"):
                return "Inbox triage"
            return "dense"

        service = _service(
            FakeProvider(respond),
            limiter,
            prompts,
            naming=NamingService(limiter, prompts),
            resolve_titles=True,
        )
        result = await service.densify(
            DensificationRequest(input_text="x", window_title="Inbox"), "fake",
        )
        assert result.title == "Inbox triage"

    @pytest.mark.asyncio
    async def test_structured_title_skips_naming(self, limiter, prompts):
        provider = FakeProvider(
            lambda p: json.dumps({"content": "dense", "title": "From backend"}),
            structured_title=True,
        )
        service = _service(
            provider, limiter, prompts,
            naming=NamingService(limiter, prompts),
            resolve_titles=True,
        )
        result = await service.densify(DensificationRequest(input_text="x"), "fake")
        assert result.title == "From backend"
        assert len(provider.prompts) == 1


class TestFallbackTitle:
    def test_order(self):
        assert fallback_title(DensificationRequest("x", "Mail", "Inbox")) == "Inbox"
        assert fallback_title(DensificationRequest("x", "Mail", " ")) == "Mail"
        assert fallback_title(DensificationRequest("x")) == "Untitled snapshot"
