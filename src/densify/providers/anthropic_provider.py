"""Anthropic Messages API provider."""

from __future__ import annotations

from typing import Any

from densify.providers.http_provider import HTTPProvider

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1400


class AnthropicProvider(HTTPProvider):
    """Provider for Claude models over ``/v1/messages``."""

    DEFAULT_BASE_URL = "https://api.anthropic.com"

    def _build_request(
        self,
        prompt: str,
        system_instruction: str | None,
        model: str,
        credential: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "temperature": 0.1,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_instruction:
            body["system"] = system_instruction
        headers = {
            "x-api-key": credential,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        return "/v1/messages", headers, body

    def _extract_text(self, data: dict[str, Any]) -> str:
        parts = [
            block.get("text", "")
            for block in data.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if p)

    def _health_path(self) -> str:
        return "/v1/models"
