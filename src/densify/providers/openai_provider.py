"""OpenAI-compatible chat completions provider."""

from __future__ import annotations

from typing import Any

from densify.providers.http_provider import HTTPProvider

DEFAULT_TEMPERATURE = 0.1


class OpenAIProvider(HTTPProvider):
    """Provider for OpenAI and OpenAI-compatible ``/v1/chat/completions``."""

    DEFAULT_BASE_URL = "https://api.openai.com"

    def _build_request(
        self,
        prompt: str,
        system_instruction: str | None,
        model: str,
        credential: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        messages: list[dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})

        body: dict[str, Any] = {
            "model": model,
            "temperature": DEFAULT_TEMPERATURE,
            "messages": messages,
        }
        if self.supports_structured_title:
            body["response_format"] = {"type": "json_object"}

        headers = {"content-type": "application/json"}
        if credential:
            headers["authorization"] = f"Bearer {credential}"
        return "/v1/chat/completions", headers, body

    def _extract_text(self, data: dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""

    def _health_path(self) -> str:
        return "/v1/models"
