"""Ollama provider.

Local models served by Ollama usually run with a small, fixed context
window; configure ``context_window`` so the engine skips the direct
attempt and chunks from the start.
"""

from __future__ import annotations

from typing import Any

from densify.providers.http_provider import HTTPProvider


class OllamaProvider(HTTPProvider):
    """Provider for Ollama's native ``/api/chat`` endpoint."""

    DEFAULT_BASE_URL = "http://localhost:11434"

    def _build_request(
        self,
        prompt: str,
        system_instruction: str | None,
        model: str,
        credential: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        del credential
        messages: list[dict[str, str]] = []
        if system_instruction:
            messages.append({"role": "system", "content": system_instruction})
        messages.append({"role": "user", "content": prompt})

        options: dict[str, Any] = {"temperature": 0.1}
        if self.context_window:
            options["num_ctx"] = self.context_window
        body: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": options,
        }
        if self.supports_structured_title:
            body["format"] = "json"
        return "/api/chat", {"content-type": "application/json"}, body

    def _extract_text(self, data: dict[str, Any]) -> str:
        message = data.get("message") or {}
        content = message.get("content")
        return content if isinstance(content, str) else ""

    def _health_path(self) -> str:
        return "/api/tags"
