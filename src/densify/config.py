"""Configuration loader for Densify.

Loads from densify.toml with sensible defaults when file is absent.
Configuration is loaded once at startup and passed via dependency injection.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

CLI_KINDS = ("codex", "claude", "gemini")
HTTP_KINDS = ("openai", "anthropic", "ollama")
BACKEND_KINDS = CLI_KINDS + HTTP_KINDS

_DEFAULT_BINARY_ENV = {
    "codex": "CODEX_CLI_PATH",
    "claude": "CLAUDE_CLI_PATH",
    "gemini": "GEMINI_CLI_PATH",
}

_DEFAULT_API_KEY_ENV = {
    "codex": "OPENAI_API_KEY",
    "claude": "ANTHROPIC_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "ollama": "",
}


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""


@dataclass(frozen=True)
class BackendConfig:
    """Configuration for a single densification backend."""

    kind: str  # "codex" | "claude" | "gemini" | "openai" | "anthropic" | "ollama"
    model: str = ""
    max_parallel: int = 2
    timeout_seconds: float = 120.0
    context_window: int = 0  # 0 = unknown / large
    binary: str = ""
    binary_env: str = ""
    base_url: str = ""
    api_key: str = ""
    api_key_env: str = ""
    structured_title: bool = False
    extra_args: list[str] = field(default_factory=list)

    @property
    def is_cli(self) -> bool:
        return self.kind in CLI_KINDS

    @property
    def resolved_binary_env(self) -> str:
        return self.binary_env or _DEFAULT_BINARY_ENV.get(self.kind, "")

    @property
    def resolved_api_key(self) -> str:
        if self.api_key:
            return self.api_key
        env_name = self.api_key_env or _DEFAULT_API_KEY_ENV.get(self.kind, "")
        return os.environ.get(env_name, "") if env_name else ""

    def __repr__(self) -> str:
        key_display = f"***{self.api_key[-4:]}" if self.api_key else ""
        return (
            f"BackendConfig(kind={self.kind!r}, model={self.model!r}, "
            f"max_parallel={self.max_parallel!r}, api_key={key_display!r})"
        )


@dataclass(frozen=True)
class EngineConfig:
    max_input_tokens: int = 64_000
    chunk_input_tokens: int = 1800
    minimum_input_tokens: int = 320
    input_utilization_ratio: float = 0.85
    output_reserve_ratio: float = 0.2
    output_reserve_min: int = 256
    output_reserve_max: int = 4096
    safety_margin_ratio: float = 0.05
    safety_margin_min: int = 64
    safety_margin_max: int = 1024
    small_window_threshold: int = 16_384
    fallback_context_window: int = 8192
    chunk_word_limit_min: int = 60
    chunk_word_limit_max: int = 400
    merge_word_limit_min: int = 120
    merge_word_limit_max: int = 900


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0
    jitter_seconds: float = 0.25


@dataclass(frozen=True)
class NamingConfig:
    resolve_titles: bool = False
    max_title_chars: int = 80


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    log_dir: str = ""

    @property
    def log_path(self) -> Path | None:
        if not self.log_dir:
            return None
        return Path(self.log_dir).expanduser()


@dataclass(frozen=True)
class Config:
    """Top-level Densify configuration."""

    engine: EngineConfig = field(default_factory=EngineConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    naming: NamingConfig = field(default_factory=NamingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    backends: dict[str, BackendConfig] = field(default_factory=dict)


def _parse_backend_config(name: str, data: dict) -> BackendConfig:
    """Parse a single backend configuration section."""
    kind = str(data.get("kind", name)).strip().lower()
    if kind not in BACKEND_KINDS:
        raise ConfigError(
            f"Backend '{name}' has unknown kind '{kind}'. "
            f"Expected one of: {', '.join(BACKEND_KINDS)}"
        )

    extra_args = data.get("extra_args", [])
    if isinstance(extra_args, str):
        extra_args = extra_args.split()

    return BackendConfig(
        kind=kind,
        model=data.get("model", ""),
        max_parallel=max(1, int(data.get("max_parallel", 2))),
        timeout_seconds=max(1.0, float(data.get("timeout_seconds", 120.0))),
        context_window=max(0, int(data.get("context_window", 0))),
        binary=data.get("binary", ""),
        binary_env=data.get("binary_env", ""),
        base_url=data.get("base_url", ""),
        api_key=data.get("api_key", ""),
        api_key_env=data.get("api_key_env", ""),
        structured_title=bool(data.get("structured_title", False)),
        extra_args=[str(arg) for arg in extra_args],
    )


def _parse_engine_config(data: dict) -> EngineConfig:
    defaults = EngineConfig()
    minimum = max(16, int(data.get("minimum_input_tokens", defaults.minimum_input_tokens)))
    return EngineConfig(
        max_input_tokens=max(1, int(data.get("max_input_tokens", defaults.max_input_tokens))),
        chunk_input_tokens=max(
            minimum, int(data.get("chunk_input_tokens", defaults.chunk_input_tokens)),
        ),
        minimum_input_tokens=minimum,
        input_utilization_ratio=min(
            1.0,
            max(0.1, float(data.get(
                "input_utilization_ratio", defaults.input_utilization_ratio,
            ))),
        ),
        output_reserve_ratio=max(
            0.0, float(data.get("output_reserve_ratio", defaults.output_reserve_ratio)),
        ),
        output_reserve_min=max(0, int(data.get("output_reserve_min", defaults.output_reserve_min))),
        output_reserve_max=max(0, int(data.get("output_reserve_max", defaults.output_reserve_max))),
        safety_margin_ratio=max(
            0.0, float(data.get("safety_margin_ratio", defaults.safety_margin_ratio)),
        ),
        safety_margin_min=max(0, int(data.get("safety_margin_min", defaults.safety_margin_min))),
        safety_margin_max=max(0, int(data.get("safety_margin_max", defaults.safety_margin_max))),
        small_window_threshold=max(
            0, int(data.get("small_window_threshold", defaults.small_window_threshold)),
        ),
        fallback_context_window=max(
            minimum,
            int(data.get("fallback_context_window", defaults.fallback_context_window)),
        ),
        chunk_word_limit_min=max(
            1, int(data.get("chunk_word_limit_min", defaults.chunk_word_limit_min)),
        ),
        chunk_word_limit_max=max(
            1, int(data.get("chunk_word_limit_max", defaults.chunk_word_limit_max)),
        ),
        merge_word_limit_min=max(
            1, int(data.get("merge_word_limit_min", defaults.merge_word_limit_min)),
        ),
        merge_word_limit_max=max(
            1, int(data.get("merge_word_limit_max", defaults.merge_word_limit_max)),
        ),
    )


def load_config(path: Path | None = None) -> Config:
    """Load configuration from a TOML file.

    If path is None, searches for densify.toml in current directory then
    ~/.densify/. Returns default config if no file is found.
    """
    if path is None:
        candidates = [
            Path.cwd() / "densify.toml",
            Path.home() / ".densify" / "densify.toml",
        ]
        for candidate in candidates:
            if candidate.exists():
                path = candidate
                break

    if path is None or not path.exists():
        return Config()

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    try:
        engine = _parse_engine_config(raw.get("engine", {}))

        retry_data = raw.get("retry", {})
        retry = RetryConfig(
            max_attempts=max(1, min(10, int(retry_data.get("max_attempts", 2)))),
            base_delay_seconds=max(0.0, float(retry_data.get("base_delay_seconds", 1.0))),
            max_delay_seconds=max(0.0, float(retry_data.get("max_delay_seconds", 8.0))),
            jitter_seconds=max(0.0, float(retry_data.get("jitter_seconds", 0.25))),
        )

        naming_data = raw.get("naming", {})
        naming = NamingConfig(
            resolve_titles=bool(naming_data.get("resolve_titles", False)),
            max_title_chars=max(8, int(naming_data.get("max_title_chars", 80))),
        )

        log_data = raw.get("logging", {})
        logging_cfg = LoggingConfig(
            level=str(log_data.get("level", "INFO")).upper(),
            log_dir=log_data.get("log_dir", ""),
        )

        backends: dict[str, BackendConfig] = {}
        for name, backend_data in raw.get("backends", {}).items():
            if isinstance(backend_data, dict):
                backends[name] = _parse_backend_config(name, backend_data)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value in {path}: {e}") from e

    return Config(
        engine=engine,
        retry=retry,
        naming=naming,
        logging=logging_cfg,
        backends=backends,
    )
