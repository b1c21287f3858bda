"""Unified token estimation.

Single source of truth for the script-aware token heuristic used by every
budgeting decision: CJK-range code points count as one token each, all
other characters at roughly three characters per token.
"""

from __future__ import annotations

import math

LATIN_CHARACTERS_PER_TOKEN = 3.0

_CJK_RANGES: tuple[tuple[int, int], ...] = (
    (0x2E80, 0x2FD5),
    (0x2FF0, 0x2FFF),
    (0x3040, 0x309F),
    (0x30A0, 0x30FF),
    (0x3100, 0x312F),
    (0x3130, 0x318F),
    (0x31A0, 0x31BF),
    (0x31C0, 0x31EF),
    (0x3400, 0x4DBF),
    (0x4E00, 0x9FFF),
    (0xAC00, 0xD7AF),
    (0xF900, 0xFAFF),
    (0xFF66, 0xFF9D),
)


def is_cjk_like(char: str) -> bool:
    """Return True when a single character falls in a CJK-like block."""
    value = ord(char)
    if value < 0x2E80:
        return False
    return any(low <= value <= high for low, high in _CJK_RANGES)


def estimate_tokens(text: str) -> int:
    """Estimate token count. Empty text is zero tokens."""
    if not text:
        return 0
    cjk = sum(1 for char in text if is_cjk_like(char))
    other = len(text) - cjk
    return cjk + math.ceil(other / LATIN_CHARACTERS_PER_TOKEN)
