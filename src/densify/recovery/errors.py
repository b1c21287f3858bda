"""Failure classification for backend calls.

Classifies a failure into a category so the orchestrator can decide, in
one place, whether it drives adaptive chunking or propagates to the
caller. Classification is text-pattern based and pure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from densify.exceptions import (
    ProviderLaunchFailed,
    ProviderModelUnavailable,
    ProviderRequestRejected,
    ProviderRequestTimedOut,
    ProviderRequestTransientFailure,
    WindowOverflowError,
)


class FailureCategory(Enum):
    """Categories of backend failures with different handling."""

    WINDOW_OVERFLOW = "window_overflow"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    LAUNCH_FAILURE = "launch_failure"
    MODEL_UNAVAILABLE = "model_unavailable"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass
class ClassifiedFailure:
    """A failure with its category and the text that matched."""

    category: FailureCategory
    message: str
    detail: str


# Order matters (first match wins). Rate-limit phrasing is checked before
# overflow phrasing because "tokens per minute" also talks about tokens.
_PATTERNS: list[tuple[re.Pattern, FailureCategory]] = [
    (
        re.compile(
            r"rate[\s_-]?limit|tokens?\s+per\s+minute|requests?\s+per\s+minute"
            r"|\b[rt]pm\b|quota|too\s+many\s+requests|\b429\b",
            re.IGNORECASE,
        ),
        FailureCategory.RATE_LIMITED,
    ),
    (
        re.compile(
            r"context[\s_-]?window|context_length_exceeded|maximum\s+context\s+length"
            r"|context\s+length|prompt\s+is\s+too\s+long|input\s+is\s+too\s+long"
            r"|input\s+token\s+count.*exceeds|too\s+many\s+(input\s+)?tokens",
            re.IGNORECASE | re.DOTALL,
        ),
        FailureCategory.WINDOW_OVERFLOW,
    ),
    (
        re.compile(r"timed\s+out|timeout", re.IGNORECASE),
        FailureCategory.TIMEOUT,
    ),
    (
        re.compile(
            r"model\b.*\b(not\s+found|does\s+not\s+exist|not\s+available|not\s+supported)"
            r"|unknown\s+model|invalid\s+model|model_not_found",
            re.IGNORECASE,
        ),
        FailureCategory.MODEL_UNAVAILABLE,
    ),
    (
        re.compile(
            r"unauthori[sz]ed|forbidden|permission\s+denied|invalid\s+api\s+key"
            r"|authentication|\b401\b|\b403\b|invalid_request_error|\b400\b",
            re.IGNORECASE,
        ),
        FailureCategory.REJECTED,
    ),
    (
        re.compile(
            r"overloaded|temporar|unavailable|connection|econnreset|\b50[234]\b",
            re.IGNORECASE,
        ),
        FailureCategory.TRANSIENT,
    ),
]

_TYPED_CATEGORIES: list[tuple[type[BaseException], FailureCategory]] = [
    (WindowOverflowError, FailureCategory.WINDOW_OVERFLOW),
    (ProviderRequestTimedOut, FailureCategory.TIMEOUT),
    (ProviderLaunchFailed, FailureCategory.LAUNCH_FAILURE),
    (ProviderModelUnavailable, FailureCategory.MODEL_UNAVAILABLE),
    (ProviderRequestRejected, FailureCategory.REJECTED),
]


def classify_text(error_text: str) -> ClassifiedFailure:
    """Classify a failure message against the ordered pattern table."""
    text = (error_text or "").strip()
    if not text:
        return ClassifiedFailure(FailureCategory.UNKNOWN, "", "")
    for pattern, category in _PATTERNS:
        match = pattern.search(text)
        if match:
            return ClassifiedFailure(category, text, match.group(0))
    return ClassifiedFailure(FailureCategory.UNKNOWN, text, text[:200])


def classify_failure(error: BaseException | str) -> FailureCategory:
    """Return the category of a failure.

    Typed failures whose category is unambiguous (timeouts, launch
    failures) are classified by type; everything else by message text.
    A transient-typed failure whose text matches nothing stays TRANSIENT.
    """
    if isinstance(error, str):
        return classify_text(error).category

    for error_type, category in _TYPED_CATEGORIES:
        if isinstance(error, error_type):
            return category

    category = classify_text(str(error)).category
    if category is FailureCategory.UNKNOWN and isinstance(
        error, ProviderRequestTransientFailure,
    ):
        return FailureCategory.TRANSIENT
    return category
