"""Request and result types for a densification run."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class DensificationRequest:
    """One captured context to densify. Immutable, one per capture."""

    input_text: str
    app_name: str = ""
    window_title: str = ""


@dataclass
class DensificationResult:
    """Dense content (never empty on success) and an optional title."""

    content: str
    title: str | None = None
