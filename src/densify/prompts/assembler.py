"""Prompt assembly for densification and naming calls.

Loads templates from YAML files for editability. Captured text goes in
by literal placeholder replacement so user braces never break a prompt.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path

import yaml

from densify.engine.planner import MERGE_SEPARATOR
from densify.engine.request import DensificationRequest
from densify.utils.tokens import estimate_tokens

_PLACEHOLDER = re.compile(r"\{(\w+)\}")

# Stand-in for the word limit when measuring a template's own cost.
_WORD_LIMIT_PLACEHOLDER = "999"

PROMPT_KINDS = ("direct", "chunk", "merge")


def render(raw: str, replacements: dict[str, str]) -> str:
    """Replace ``{name}`` placeholders in one pass; unknown names stay as-is."""
    return _PLACEHOLDER.sub(
        lambda match: replacements.get(match.group(1), match.group(0)),
        raw,
    )


class PromptAssembler:
    """Assembles densification and naming prompts from YAML templates."""

    def __init__(self, templates_dir: Path | None = None):
        if templates_dir is None:
            templates_dir = Path(__file__).parent / "templates"
        self._templates_dir = templates_dir
        self._templates: dict[str, dict] = {}
        self._load_templates()

    def _load_templates(self) -> None:
        """Load all YAML templates from the templates directory."""
        if not self._templates_dir.exists():
            return
        for yaml_file in self._templates_dir.glob("*.yaml"):
            with open(yaml_file, encoding="utf-8") as f:
                self._templates[yaml_file.stem] = yaml.safe_load(f) or {}

    def get_template(self, name: str) -> dict:
        """Get a loaded template by name."""
        if name not in self._templates:
            raise KeyError(f"Template not found: {name}")
        return self._templates[name]

    def _section(self, template: str, section: str) -> str:
        return str(self.get_template(template).get(section, "")).strip()

    # --- Densification ---

    def system_instruction(self) -> str:
        return self._section("densify", "system")

    def build_direct_prompt(
        self,
        request: DensificationRequest,
        *,
        structured: bool = False,
    ) -> str:
        """Prompt for a single full-input call."""
        prompt = render(self._section("densify", "direct"), {
            **_request_fields(request),
            "input_text": request.input_text.strip(),
        })
        return self._finish(prompt, structured)

    def build_chunk_prompt(
        self,
        request: DensificationRequest,
        chunk_text: str,
        *,
        index: int,
        total: int,
        word_limit: int,
        structured: bool = False,
    ) -> str:
        """Prompt for one chunk; ``index`` is 1-based."""
        prompt = render(self._section("densify", "chunk"), {
            **_request_fields(request),
            "index": str(index),
            "total": str(total),
            "word_limit": str(word_limit),
            "input_text": chunk_text,
        })
        return self._finish(prompt, structured)

    def build_merge_prompt(
        self,
        request: DensificationRequest,
        partials: Sequence[str],
        *,
        word_limit: int,
        structured: bool = False,
    ) -> str:
        """Prompt combining one merge group, partials in order."""
        prompt = render(self._section("densify", "merge"), {
            **_request_fields(request),
            "word_limit": str(word_limit),
            "partials": MERGE_SEPARATOR.join(partials),
        })
        return self._finish(prompt, structured)

    def overhead_tokens(
        self,
        kind: str,
        request: DensificationRequest | None = None,
        *,
        structured: bool = False,
    ) -> int:
        """Token cost of a prompt's own text, with an empty payload.

        Includes the system instruction, which travels with every call.
        """
        if kind not in PROMPT_KINDS:
            raise KeyError(f"Unknown prompt kind: {kind}")
        fields = _request_fields(request) if request else {"app_name": "", "window_title": ""}
        prompt = render(self._section("densify", kind), {
            **fields,
            "index": "99",
            "total": "99",
            "word_limit": _WORD_LIMIT_PLACEHOLDER,
            "input_text": "",
            "partials": "",
        })
        prompt = self._finish(prompt, structured)
        return estimate_tokens(self.system_instruction()) + estimate_tokens(prompt)

    def _finish(self, prompt: str, structured: bool) -> str:
        if not structured:
            return prompt
        suffix = self._section("densify", "structured_output")
        return f"{prompt}\n\n{suffix}" if suffix else prompt

    # --- Naming ---

    def naming_system_instruction(self) -> str:
        return self._section("naming", "system")

    def build_snapshot_title_prompt(
        self,
        request: DensificationRequest,
        dense_content: str,
    ) -> str:
        return render(self._section("naming", "snapshot_title"), {
            **_request_fields(request),
            "dense_content": dense_content.strip(),
        })

    def build_context_title_prompt(self, snapshots: Sequence[tuple[int, str]]) -> str:
        """Prompt naming a context from (sequence, dense content) pairs."""
        joined = "\n\n".join(
            f"[{sequence}] {content.strip()}" for sequence, content in snapshots
        )
        return render(self._section("naming", "context_title"), {"snapshots": joined})


def _request_fields(request: DensificationRequest) -> dict[str, str]:
    return {
        "app_name": request.app_name.strip() or "Unknown",
        "window_title": request.window_title.strip() or "Untitled",
    }
