"""CLI-backed providers (codex, claude, gemini).

Each call spawns the backend's command-line tool, writes the prompt to
stdin and parses the printed output. The binary comes from the backend
config, then the kind's environment-variable override, then the default
executable name.
"""

from __future__ import annotations

import logging
import os
import shutil

from densify.config import BackendConfig
from densify.exceptions import (
    ProviderLaunchFailed,
    ProviderRequestFailed,
    ProviderRequestTimedOut,
)
from densify.providers.base import Provider, ProviderResponse
from densify.providers.parsing import (
    extract_content,
    extract_error_message,
    parse_json,
)
from densify.providers.process import (
    ProcessExecutor,
    ProcessExitError,
    ProcessLaunchError,
    ProcessTimeoutError,
)

logger = logging.getLogger(__name__)

_DEFAULT_BINARIES = {
    "codex": "codex",
    "claude": "claude",
    "gemini": "gemini",
}

_JSON_ENVELOPE_KINDS = ("claude", "gemini")

_CREDENTIAL_ENV = {
    "codex": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


class CLIProvider(Provider):
    """Provider that shells out to a vendor CLI."""

    def __init__(
        self,
        name: str,
        config: BackendConfig,
        *,
        executor: ProcessExecutor | None = None,
        small_window_threshold: int = 16_384,
    ):
        if config.kind not in _DEFAULT_BINARIES:
            raise ValueError(f"Not a CLI backend kind: {config.kind}")
        super().__init__(name, config, small_window_threshold)
        self._executor = executor or ProcessExecutor()

    def resolve_binary(self) -> str:
        if self._config.binary:
            return self._config.binary
        env_name = self._config.resolved_binary_env
        override = os.environ.get(env_name, "").strip() if env_name else ""
        return override or _DEFAULT_BINARIES[self.kind]

    def build_args(self, model: str) -> list[str]:
        """Argument shape for the backend's non-interactive mode."""
        if self.kind == "codex":
            args = ["exec", "--skip-git-repo-check"]
            if model:
                args += ["--model", model]
            args += list(self._config.extra_args)
            return args + ["-"]
        if self.kind == "claude":
            args = ["-p", "--output-format", "json"]
            if model:
                args += ["--model", model]
            return args + list(self._config.extra_args)
        args = ["--output-format", "json"]
        if model:
            args += ["--model", model]
        return args + list(self._config.extra_args)

    def build_env(self, credential: str) -> dict[str, str]:
        env = dict(os.environ)
        env_name = _CREDENTIAL_ENV.get(self.kind, "")
        if credential and env_name:
            env[env_name] = credential
        return env

    async def request_text(
        self,
        prompt: str,
        system_instruction: str | None = None,
        model: str | None = None,
        credential: str | None = None,
    ) -> ProviderResponse:
        binary = self.resolve_binary()
        stdin_text = prompt
        if system_instruction:
            stdin_text = f"{system_instruction.strip()}\n\n{prompt}"

        try:
            output = await self._executor.run(
                binary,
                self.build_args(self.resolve_model(model)),
                stdin_text,
                self.timeout_seconds,
                env=self.build_env(self.resolve_credential(credential)),
            )
        except ProcessTimeoutError as e:
            raise ProviderRequestTimedOut(self.name, e.timeout_seconds) from e
        except ProcessLaunchError as e:
            raise ProviderLaunchFailed(
                f"{self.name} CLI could not be started ({binary}): {e.reason}. "
                f"Install it or set {self._config.resolved_binary_env}."
            ) from e
        except ProcessExitError as e:
            raise ProviderRequestFailed(e.details) from e

        # codex prints the model's final message as-is; the others wrap it
        # in a JSON envelope.
        payload = parse_json(output.stdout) if self.kind in _JSON_ENVELOPE_KINDS else None
        if payload is not None:
            error = self._envelope_error(payload)
            if error:
                logger.debug("%s reported an error in its output envelope: %s", self.name, error)
                raise ProviderRequestFailed(error)
            content = extract_content(payload)
            text = content if content is not None else output.stdout.strip()
        else:
            text = output.stdout.strip()

        if not text:
            raise ProviderRequestFailed(f"{self.name} returned empty output.")

        return ProviderResponse(
            text=text,
            raw=payload if payload is not None else output.stdout,
            latency_ms=output.duration_ms,
        )

    @staticmethod
    def _envelope_error(payload: dict) -> str | None:
        structured = extract_error_message(payload)
        if structured:
            return structured
        if payload.get("is_error") is True:
            detail = payload.get("result") or payload.get("subtype") or "request failed"
            return str(detail).strip()
        return None

    async def health_check(self) -> bool:
        binary = self.resolve_binary()
        if os.path.sep in binary:
            return os.access(binary, os.X_OK)
        return shutil.which(binary) is not None
