"""Response and failure-output parsing for backend calls.

CLI tools print anything from a single JSON object to a stream of log
lines followed by a final JSON line, or plain text. Parsing is JSON-first
with a freeform fallback and never raises.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from densify.recovery.errors import FailureCategory, classify_text

STRUCTURED_KEYS: tuple[str, ...] = (
    "structured_output",
    "structuredOutput",
    "structured",
)

CONTENT_KEYS: tuple[str, ...] = (
    "content",
    "result",
    "response",
    "output",
    "message",
    "text",
)

TITLE_KEYS: tuple[str, ...] = ("title",)

_MAX_ERROR_CHARS = 400

_NOISE_LINE = re.compile(
    r"""^(
        \s+at\s.+                                  # JS stack frame
      | \s*File\s".+",\s+line\s\d+.*                # Python stack frame
      | \s*Traceback\s\(most\srecent\scall\slast\).*
      | \s*node:internal.*
      | \s*\^+\s*$
      | \s*\[?(DEBUG|TRACE|INFO)\]?[\s:].*
    )$""",
    re.VERBOSE | re.IGNORECASE,
)

_TIMESTAMP_PREFIX = re.compile(
    r"^\s*\[?\d{4}-\d{2}-\d{2}[T\s]\d{2}:\d{2}[^\s\]]*\]?\s*"
)

_FAILURE_PHRASE = re.compile(
    r"error|failed|failure|exceed|too long|invalid|unauthori[sz]ed|forbidden"
    r"|denied|not found|does not exist|quota|rate limit|limit reached"
    r"|context window|context length|timed out|timeout|unavailable|overloaded",
    re.IGNORECASE,
)

# Control-flow relevance of a failure line, most relevant first.
_CATEGORY_RANK = {category: rank for rank, category in enumerate(FailureCategory)}


@dataclass
class ParsedResponse:
    """Content and optional title extracted from a backend's output."""

    content: str
    title: str | None = None
    payload: dict[str, Any] | None = field(default=None, repr=False)


def parse_json(raw_output: str) -> dict[str, Any] | None:
    """Parse a JSON object from raw output.

    Output that starts with ``{`` is parsed directly; otherwise (or when
    that fails) lines are scanned from the end for the last line that
    starts with ``{`` and parses as an object.
    """
    trimmed = (raw_output or "").strip()
    if not trimmed:
        return None

    if trimmed.startswith("{"):
        parsed = _loads_object(trimmed)
        if parsed is not None:
            return parsed

    for line in reversed(trimmed.splitlines()):
        candidate = line.strip()
        if not candidate.startswith("{"):
            continue
        parsed = _loads_object(candidate)
        if parsed is not None:
            return parsed
    return None


def extract_content(payload: dict[str, Any] | None) -> str | None:
    """Return the first non-empty content value, structured output first."""
    return _first_string(payload, CONTENT_KEYS)


def extract_title(payload: dict[str, Any] | None) -> str | None:
    """Return a non-empty title, structured output first."""
    return _first_string(payload, TITLE_KEYS)


def parse_response(raw_output: str) -> ParsedResponse:
    """Extract content and title; falls back to the trimmed raw output."""
    trimmed = (raw_output or "").strip()
    payload = parse_json(trimmed)
    if payload is None:
        return ParsedResponse(content=trimmed)
    content = extract_content(payload)
    return ParsedResponse(
        content=content if content is not None else trimmed,
        title=extract_title(payload),
        payload=payload,
    )


def extract_error_message(payload: dict[str, Any] | None) -> str | None:
    """Read ``error.message`` / ``error.type`` style fields from a payload."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if not isinstance(error, dict):
        return None

    message = error.get("message")
    message = message.strip() if isinstance(message, str) else ""
    error_type = error.get("type") or error.get("code") or error.get("status")
    error_type = error_type.strip() if isinstance(error_type, str) else ""
    if message and error_type and error_type.lower() not in message.lower():
        return f"{error_type}: {message}"
    return message or error_type or None


def summarize_failure(stdout: str, stderr: str, fallback: str) -> str:
    """Build a concise error message from a failed command's output.

    Prefers structured error fields in JSON output. Otherwise picks the
    line whose failure category ranks highest (window overflow first),
    then the last line carrying a generic failure phrase, then
    ``fallback``. Stack traces and log noise are skipped, and log
    timestamps are stripped. On ties the later line wins, stderr after
    stdout.
    """
    for stream in (stdout, stderr):
        structured = extract_error_message(parse_json(stream))
        if structured:
            return _truncate(structured)

    lines = _meaningful_lines(stdout) + _meaningful_lines(stderr)
    best: tuple[int, str] | None = None
    for line in lines:
        category = classify_text(line).category
        if category is FailureCategory.UNKNOWN:
            continue
        rank = _CATEGORY_RANK[category]
        if best is None or rank <= best[0]:
            best = (rank, line)
    if best is not None:
        return _truncate(best[1])

    phrased = [line for line in lines if _FAILURE_PHRASE.search(line)]
    if phrased:
        return _truncate(phrased[-1])
    return fallback


def clean_error_message(text: str) -> str:
    """Drop stack-trace and log-noise lines and trim the remainder."""
    lines = _meaningful_lines(text)
    if not lines:
        return (text or "").strip()[:_MAX_ERROR_CHARS]
    return _truncate(" ".join(lines))


def _meaningful_lines(text: str) -> list[str]:
    lines = []
    for line in (text or "").splitlines():
        line = _TIMESTAMP_PREFIX.sub("", line, count=1)
        if not line.strip() or _NOISE_LINE.match(line):
            continue
        lines.append(line.strip())
    return lines


def _truncate(text: str) -> str:
    text = text.strip()
    if len(text) <= _MAX_ERROR_CHARS:
        return text
    return text[:_MAX_ERROR_CHARS - 3].rstrip() + "..."


def _loads_object(text: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _first_string(payload: dict[str, Any] | None, keys: tuple[str, ...]) -> str | None:
    if not isinstance(payload, dict):
        return None
    for structured_key in STRUCTURED_KEYS:
        nested = payload.get(structured_key)
        if isinstance(nested, dict):
            value = _first_string_at(nested, keys)
            if value is not None:
                return value
    return _first_string_at(payload, keys)


def _first_string_at(mapping: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None
