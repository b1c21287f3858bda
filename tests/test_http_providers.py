"""Tests for the HTTP-backed providers using httpx mock transports."""

from __future__ import annotations

import json

import httpx
import pytest

from densify.config import BackendConfig
from densify.exceptions import (
    ProviderRequestFailed,
    ProviderRequestTimedOut,
    ProviderRequestTransientFailure,
)
from densify.providers.anthropic_provider import AnthropicProvider
from densify.providers.ollama_provider import OllamaProvider
from densify.providers.openai_provider import OpenAIProvider


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status: int = 200, payload: object = None, text: str | None = None):
        self.status = status
        self.payload = payload
        self.text = text
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status, text=self.text)
        return httpx.Response(self.status, json=self.payload)

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _openai(handler, **overrides) -> OpenAIProvider:
    config = BackendConfig(kind="openai", model="gpt-4o-mini", api_key="sk-test", **overrides)
    return OpenAIProvider("openai", config, transport=httpx.MockTransport(handler))


def _openai_reply(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestOpenAIProvider:
    @pytest.mark.asyncio
    async def test_chat_completion_request(self):
        recorder = Recorder(payload=_openai_reply("  dense  "))
        provider = _openai(recorder)
        response = await provider.request_text("PROMPT", system_instruction="SYSTEM")
        await provider.close()

        assert response.text == "dense"
        request = recorder.requests[0]
        assert request.url == "https://api.openai.com/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = recorder.body
        assert body["model"] == "gpt-4o-mini"
        assert body["messages"] == [
            {"role": "system", "content": "SYSTEM"},
            {"role": "user", "content": "PROMPT"},
        ]
        assert "response_format" not in body

    @pytest.mark.asyncio
    async def test_structured_backend_requests_json(self):
        recorder = Recorder(payload=_openai_reply('{"content": "x", "title": "y"}'))
        provider = _openai(recorder, structured_title=True)
        await provider.request_text("PROMPT", model="gpt-4o", credential="sk-other")
        assert recorder.body["response_format"] == {"type": "json_object"}
        assert recorder.body["model"] == "gpt-4o"
        assert recorder.requests[0].headers["authorization"] == "Bearer sk-other"

    @pytest.mark.asyncio
    async def test_custom_base_url(self):
        recorder = Recorder(payload=_openai_reply("ok"))
        provider = _openai(recorder, base_url="http://localhost:8000/")
        await provider.request_text("PROMPT")
        assert recorder.requests[0].url == "http://localhost:8000/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_status_error_carries_structured_message(self):
        recorder = Recorder(status=400, payload={
            "error": {
                "message": "This model's maximum context length is 8192 tokens.",
                "type": "invalid_request_error",
                "code": "context_length_exceeded",
            },
        })
        with pytest.raises(ProviderRequestFailed) as exc_info:
            await _openai(recorder).request_text("PROMPT")
        message = str(exc_info.value)
        assert message.startswith("openai returned HTTP 400: ")
        assert "maximum context length is 8192 tokens" in message

    @pytest.mark.asyncio
    async def test_status_error_with_plain_body(self):
        recorder = Recorder(status=503, text="Service Unavailable")
        with pytest.raises(ProviderRequestFailed, match="HTTP 503: Service Unavailable"):
            await _openai(recorder).request_text("PROMPT")

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ProviderRequestTimedOut):
            await _openai(handler).request_text("PROMPT")

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderRequestTransientFailure, match="Cannot connect to openai"):
            await _openai(handler).request_text("PROMPT")

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        with pytest.raises(ProviderRequestFailed, match="non-JSON"):
            await _openai(Recorder(text="<html>")).request_text("PROMPT")

    @pytest.mark.asyncio
    async def test_empty_choices(self):
        with pytest.raises(ProviderRequestFailed, match="returned empty output"):
            await _openai(Recorder(payload={"choices": []})).request_text("PROMPT")

    @pytest.mark.asyncio
    async def test_health_check(self):
        assert await _openai(Recorder(payload={"data": []})).health_check() is True
        assert await _openai(Recorder(status=500, payload={})).health_check() is False


class TestAnthropicProvider:
    @pytest.mark.asyncio
    async def test_messages_request(self):
        recorder = Recorder(payload={
            "content": [
                {"type": "text", "text": "first"},
                {"type": "tool_use", "id": "x"},
                {"type": "text", "text": "second"},
            ],
        })
        config = BackendConfig(kind="anthropic", model="claude-sonnet-4-5", api_key="key")
        provider = AnthropicProvider(
            "anthropic", config, transport=httpx.MockTransport(recorder),
        )
        response = await provider.request_text("PROMPT", system_instruction="SYSTEM")

        assert response.text == "first\nsecond"
        request = recorder.requests[0]
        assert request.url == "https://api.anthropic.com/v1/messages"
        assert request.headers["x-api-key"] == "key"
        assert request.headers["anthropic-version"] == "2023-06-01"
        assert recorder.body["system"] == "SYSTEM"
        assert recorder.body["messages"] == [{"role": "user", "content": "PROMPT"}]


class TestOllamaProvider:
    @pytest.mark.asyncio
    async def test_chat_request_sets_context_window(self):
        recorder = Recorder(payload={"message": {"role": "assistant", "content": "dense"}})
        config = BackendConfig(kind="ollama", model="llama3", context_window=8192)
        provider = OllamaProvider("local", config, transport=httpx.MockTransport(recorder))
        response = await provider.request_text("PROMPT")

        assert response.text == "dense"
        assert recorder.requests[0].url == "http://localhost:11434/api/chat"
        body = recorder.body
        assert body["stream"] is False
        assert body["options"]["num_ctx"] == 8192
        assert "format" not in body
        assert provider.skips_direct_attempt is True

    @pytest.mark.asyncio
    async def test_unknown_window_omits_num_ctx(self):
        recorder = Recorder(payload={"message": {"content": "dense"}})
        config = BackendConfig(kind="ollama", model="llama3", structured_title=True)
        provider = OllamaProvider("local", config, transport=httpx.MockTransport(recorder))
        await provider.request_text("PROMPT")
        assert "num_ctx" not in recorder.body["options"]
        assert recorder.body["format"] == "json"
        assert provider.skips_direct_attempt is False
