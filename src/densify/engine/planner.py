"""Token-budget planning: chunk and merge-group boundaries.

Input text is split on paragraph breaks first, oversized paragraphs at
word boundaries, and oversized words by raw character count. Sections
are then packed greedily, in order, into chunks that stay under the
budget. Partial summaries are packed the same way into merge groups.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from densify.config import EngineConfig
from densify.utils.tokens import estimate_tokens

PARAGRAPH_SEPARATOR = "\n\n"
MERGE_SEPARATOR = "\n\n---\n\n"
PLAIN_SEPARATOR = "\n\n"

MINIMUM_INPUT_TOKENS = 320

_WHITESPACE_RUN = re.compile(r"(\s+)")


@dataclass(frozen=True)
class Chunk:
    """An ordered slice of normalized input text.

    ``separator`` is the whitespace that joins this chunk to the previous
    one in the normalized text (empty for the first chunk and for
    character-level continuations).
    """

    text: str
    tokens: int
    separator: str = ""


@dataclass(frozen=True)
class BudgetPlan:
    """Token budgets for one chunking attempt. Recomputed, never persisted."""

    context_window_cap: int
    chunk_input_tokens: int
    merge_input_tokens: int
    chunk_word_limit: int
    merge_word_limit: int
    output_reserve: int
    safety_margin: int


def normalize_text(text: str) -> str:
    """Return the canonical form chunking reconstructs.

    Line endings become ``\\n``, the text is trimmed, and paragraphs are
    trimmed, emptied ones dropped, and rejoined by a blank line.
    """
    return PARAGRAPH_SEPARATOR.join(_paragraphs(text))


def join_chunks(chunks: Sequence[Chunk]) -> str:
    """Rejoin chunks with their separators restored."""
    return "".join(
        (chunk.separator if index else "") + chunk.text
        for index, chunk in enumerate(chunks)
    )


def halve_budget(value: int, floor: int) -> int | None:
    """Halve a token budget, never going below ``floor``.

    Returns None when the budget already sits at the floor and cannot be
    reduced any further.
    """
    if value <= floor:
        return None
    return max(floor, value // 2)


def _clamp(value: float, low: int, high: int) -> int:
    if high < low:
        return low
    return int(max(low, min(value, high)))


def derive_budget_plan(
    *,
    context_window_cap: int,
    requested_chunk_tokens: int,
    chunk_prompt_overhead: int,
    merge_prompt_overhead: int,
    settings: EngineConfig,
    requested_merge_tokens: int | None = None,
) -> BudgetPlan:
    """Derive chunk/merge budgets and word limits for a context window.

    Output reserve and safety margin are ratios of the cap clamped to
    absolute token bounds so tiny windows do not reserve a degenerate
    fraction.
    """
    floor = settings.minimum_input_tokens
    cap = max(1, int(context_window_cap))
    output_reserve = _clamp(
        cap * settings.output_reserve_ratio,
        settings.output_reserve_min,
        settings.output_reserve_max,
    )
    safety_margin = _clamp(
        cap * settings.safety_margin_ratio,
        settings.safety_margin_min,
        settings.safety_margin_max,
    )

    allowed_input = cap - chunk_prompt_overhead - output_reserve - safety_margin
    chunk_budget = _clamp(
        allowed_input * settings.input_utilization_ratio,
        floor,
        max(floor, int(requested_chunk_tokens)),
    )

    allowed_merge_input = cap - merge_prompt_overhead - output_reserve - safety_margin
    merge_request = chunk_budget if requested_merge_tokens is None else requested_merge_tokens
    merge_budget = _clamp(merge_request, floor, allowed_merge_input)

    return BudgetPlan(
        context_window_cap=cap,
        chunk_input_tokens=chunk_budget,
        merge_input_tokens=merge_budget,
        chunk_word_limit=_word_limit(
            chunk_budget,
            ratio=0.25,
            output_reserve=output_reserve,
            low=settings.chunk_word_limit_min,
            high=settings.chunk_word_limit_max,
        ),
        merge_word_limit=_word_limit(
            merge_budget,
            ratio=0.4,
            output_reserve=output_reserve,
            low=settings.merge_word_limit_min,
            high=settings.merge_word_limit_max,
        ),
        output_reserve=output_reserve,
        safety_margin=safety_margin,
    )


def _word_limit(
    budget_tokens: int,
    *,
    ratio: float,
    output_reserve: int,
    low: int,
    high: int,
) -> int:
    # Roughly 0.75 words per token; the summary must also fit the reserve.
    proportional = budget_tokens * ratio
    reserve_words = output_reserve * 0.75
    return _clamp(min(proportional, reserve_words), low, high)


class WindowPlanner:
    """Plans chunk and merge-group boundaries using token estimates."""

    def __init__(self, minimum_input_tokens: int = MINIMUM_INPUT_TOKENS):
        self._minimum_input_tokens = max(1, int(minimum_input_tokens))

    @property
    def minimum_input_tokens(self) -> int:
        return self._minimum_input_tokens

    def chunk_input(self, text: str, max_tokens: int) -> list[Chunk]:
        """Split text into chunks whose estimates stay within ``max_tokens``."""
        max_tokens = max(1, int(max_tokens))
        sections: list[tuple[str, str]] = []
        for index, paragraph in enumerate(_paragraphs(text)):
            lead = PARAGRAPH_SEPARATOR if index else ""
            if estimate_tokens(paragraph) <= max_tokens:
                sections.append((lead, paragraph))
                continue
            pieces = self._split_oversized_segment(paragraph, max_tokens)
            _, first_text = pieces[0]
            sections.append((lead, first_text))
            sections.extend(pieces[1:])
        return self._pack(sections, max_tokens)

    def merge_groups(
        self,
        partials: Sequence[str],
        max_merge_tokens: int,
    ) -> list[list[str]]:
        """Pack partials, in order, into groups under ``max_merge_tokens``.

        A partial already over budget is pre-split at half the merge budget
        (never below the planner floor) before grouping.
        """
        max_merge_tokens = max(1, int(max_merge_tokens))
        normalized = [p.strip() for p in partials if p and p.strip()]
        if not normalized:
            return []

        separator_tokens = estimate_tokens(MERGE_SEPARATOR)
        presplit_tokens = max(self._minimum_input_tokens, max_merge_tokens // 2)
        groups: list[list[str]] = []
        current: list[str] = []
        current_tokens = 0
        for partial in normalized:
            if estimate_tokens(partial) <= max_merge_tokens:
                sections = [partial]
            else:
                sections = [c.text for c in self.chunk_input(partial, presplit_tokens)]
            for section in sections:
                section_tokens = estimate_tokens(section)
                candidate = current_tokens + (separator_tokens if current else 0) + section_tokens
                if candidate > max_merge_tokens and current:
                    groups.append(current)
                    current = [section]
                    current_tokens = section_tokens
                    continue
                current.append(section)
                current_tokens = candidate

        if current:
            groups.append(current)
        return groups

    def _pack(self, sections: list[tuple[str, str]], max_tokens: int) -> list[Chunk]:
        chunks: list[Chunk] = []
        current: list[tuple[str, str]] = []
        current_tokens = 0
        for separator, body in sections:
            body_tokens = estimate_tokens(body)
            candidate = current_tokens + (estimate_tokens(separator) if current else 0) + body_tokens
            if candidate > max_tokens and current:
                chunks.append(_make_chunk(current))
                current = [(separator, body)]
                current_tokens = body_tokens
                continue
            current.append((separator, body))
            current_tokens = candidate

        if current:
            chunks.append(_make_chunk(current))
        return chunks

    def _split_oversized_segment(
        self,
        segment: str,
        max_tokens: int,
    ) -> list[tuple[str, str]]:
        """Split a paragraph at word boundaries, then by characters.

        Returns (separator, text) pieces; the separator is the original
        whitespace preceding the piece.
        """
        parts = _WHITESPACE_RUN.split(segment)
        # parts alternates word, whitespace, word, ...; segment is stripped.
        words = [(parts[i - 1] if i else "", parts[i]) for i in range(0, len(parts), 2)]

        pieces: list[tuple[str, str]] = []
        current_separator = ""
        current_text = ""
        current_tokens = 0
        for separator, word in words:
            word_tokens = estimate_tokens(word)
            if word_tokens > max_tokens:
                if current_text:
                    pieces.append((current_separator, current_text))
                    current_text = ""
                    current_tokens = 0
                slices = _split_by_characters(word, max_tokens)
                pieces.append((separator, slices[0]))
                pieces.extend(("", piece) for piece in slices[1:])
                continue

            if not current_text:
                current_separator, current_text, current_tokens = separator, word, word_tokens
                continue

            candidate = current_tokens + estimate_tokens(separator) + word_tokens
            if candidate > max_tokens:
                pieces.append((current_separator, current_text))
                current_separator, current_text, current_tokens = separator, word, word_tokens
                continue
            current_text = current_text + separator + word
            current_tokens = candidate

        if current_text:
            pieces.append((current_separator, current_text))
        return pieces


def _paragraphs(text: str) -> list[str]:
    trimmed = (text or "").replace("\r\n", "\n").strip()
    if not trimmed:
        return []
    return [p.strip() for p in trimmed.split(PARAGRAPH_SEPARATOR) if p.strip()]


def _split_by_characters(value: str, max_characters: int) -> list[str]:
    # Every character costs at most one token, so a slice of N characters
    # never estimates above N.
    size = max(1, max_characters)
    return [value[start:start + size] for start in range(0, len(value), size)]


def _make_chunk(sections: list[tuple[str, str]]) -> Chunk:
    leading_separator, first = sections[0]
    text = first + "".join(separator + body for separator, body in sections[1:])
    return Chunk(text=text, tokens=estimate_tokens(text), separator=leading_separator)
