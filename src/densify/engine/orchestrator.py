"""Densification orchestrator: direct attempt, adaptive chunking and merging.

A run tries the whole capture in one call first (unless the backend has a
small fixed window). When a call overflows the backend's context window,
the input is chunked, every chunk is densified in parallel, and the
partials are merged pass by pass until one text remains.

Overflow during a merge halves the merge budget and retries the merge
from the partials already computed. Once the merge budget sits at the
floor, the chunk budget is halved and the whole pipeline restarts from
the original input. Overflow with both budgets at the floor fails the run.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from densify.config import EngineConfig
from densify.engine.limiter import BackendWorkLimiter
from densify.engine.planner import (
    PLAIN_SEPARATOR,
    BudgetPlan,
    WindowPlanner,
    derive_budget_plan,
    halve_budget,
)
from densify.engine.request import DensificationRequest, DensificationResult
from densify.exceptions import (
    DensifyError,
    EmptyInputError,
    ProviderError,
    ProviderLaunchFailed,
    ProviderModelUnavailable,
    ProviderNotConfiguredError,
    ProviderRequestFailed,
    ProviderRequestRejected,
    ProviderRequestTimedOut,
    ProviderRequestTransientFailure,
    WindowOverflowError,
)
from densify.prompts.assembler import PromptAssembler
from densify.providers.base import Provider
from densify.providers.parsing import ParsedResponse, clean_error_message, parse_response
from densify.recovery.errors import FailureCategory, classify_failure

logger = logging.getLogger(__name__)


class RetryPhase(Enum):
    DIRECT = "direct"
    CHUNKING = "chunking"
    MERGING = "merging"


@dataclass(frozen=True)
class RetryState:
    """Budget level of an adaptive run.

    ``merge_budget`` of None means "derive from the chunk budget", which
    is what every fresh chunking attempt starts from.
    """

    phase: RetryPhase
    chunk_budget: int
    floor: int
    merge_budget: int | None = None
    attempt: int = 1

    @classmethod
    def chunking(cls, chunk_budget: int, floor: int) -> RetryState:
        return cls(RetryPhase.CHUNKING, max(floor, chunk_budget), floor)

    def merging(self, merge_budget: int) -> RetryState:
        return replace(self, phase=RetryPhase.MERGING, merge_budget=merge_budget)

    def halve_merge(self) -> RetryState | None:
        """Next merge-only level, or None when the merge budget is at the floor."""
        if self.merge_budget is None:
            return None
        halved = halve_budget(self.merge_budget, self.floor)
        if halved is None:
            return None
        return replace(self, merge_budget=halved, attempt=self.attempt + 1)

    def halve_chunk(self) -> RetryState | None:
        """Restart level with a halved chunk budget, or None at the floor."""
        halved = halve_budget(self.chunk_budget, self.floor)
        if halved is None:
            return None
        return RetryState(
            phase=RetryPhase.CHUNKING,
            chunk_budget=halved,
            floor=self.floor,
            attempt=self.attempt + 1,
        )


@dataclass
class _Run:
    request: DensificationRequest
    model: str | None
    credential: str | None
    structured: bool
    first_title: str | None = None

    def note_titles(self, responses: Sequence[ParsedResponse]) -> None:
        if self.first_title is not None:
            return
        for response in responses:
            if response.title:
                self.first_title = response.title
                return


class DensificationOrchestrator:
    """Runs one backend through the direct/chunking/merging state machine.

    The limiter is shared process-wide; every backend call holds one of
    the backend's slots for its duration.
    """

    def __init__(
        self,
        provider: Provider,
        *,
        limiter: BackendWorkLimiter,
        prompts: PromptAssembler,
        settings: EngineConfig | None = None,
        planner: WindowPlanner | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ):
        self._provider = provider
        self._limiter = limiter
        self._prompts = prompts
        self._settings = settings or EngineConfig()
        self._planner = planner or WindowPlanner(self._settings.minimum_input_tokens)
        self._event_hook = event_hook

    @property
    def provider(self) -> Provider:
        return self._provider

    async def densify(
        self,
        request: DensificationRequest,
        *,
        model: str | None = None,
        credential: str | None = None,
    ) -> DensificationResult:
        if not request.input_text.strip():
            raise EmptyInputError()
        run = _Run(
            request=request,
            model=model,
            credential=credential,
            structured=self._provider.supports_structured_title,
        )

        if self._provider.skips_direct_attempt:
            logger.debug(
                "%s has a %d-token window; chunking from the start",
                self._provider.name, self._provider.context_window,
            )
            return await self._densify_adaptive(run)

        self._emit("direct")
        prompt = self._prompts.build_direct_prompt(request, structured=run.structured)
        try:
            response = await self._call(run, prompt)
        except WindowOverflowError as overflow:
            logger.info(
                "%s context window exceeded on the full capture; switching to chunking: %s",
                self._provider.name, overflow.details,
            )
            self._emit("direct_overflow", details=overflow.details)
            return await self._densify_adaptive(run)

        self._emit("done", passes=0)
        return DensificationResult(content=response.content, title=self._title(response.title, run))

    # --- State machine ---

    async def _densify_adaptive(self, run: _Run) -> DensificationResult:
        floor = self._planner.minimum_input_tokens
        initial = self._plan(run, RetryState.chunking(self._settings.chunk_input_tokens, floor))
        state = RetryState.chunking(initial.chunk_input_tokens, floor)

        while True:
            plan = self._plan(run, state)
            try:
                partials = await self._chunk_pass(run, plan)
            except WindowOverflowError as overflow:
                state = self._next_chunk_level(state, overflow)
                continue

            state = state.merging(plan.merge_input_tokens)
            while True:
                try:
                    return await self._merge_passes(run, partials, self._plan(run, state))
                except _MergeOverflow as overflow:
                    partials = overflow.partials
                    last_overflow = overflow.error
                    halved = state.halve_merge()
                    if halved is None:
                        break
                    logger.info(
                        "%s merge overflowed at %d tokens; retrying merge at %d",
                        self._provider.name, state.merge_budget, halved.merge_budget,
                    )
                    self._emit(
                        "merge_overflow",
                        merge_budget=halved.merge_budget,
                        partials=len(partials),
                    )
                    state = halved

            state = self._next_chunk_level(state, last_overflow)

    def _next_chunk_level(
        self,
        state: RetryState,
        overflow: WindowOverflowError,
    ) -> RetryState:
        halved = state.halve_chunk()
        if halved is None:
            self._emit("exhausted", chunk_budget=state.chunk_budget, details=overflow.details)
            raise ProviderRequestFailed(
                f"{self._provider.name} could not densify the capture within its "
                f"context window (budgets reached the {state.floor}-token floor): "
                f"{overflow.details}"
            ) from overflow
        logger.info(
            "%s chunk overflowed at %d tokens; restarting chunking at %d",
            self._provider.name, state.chunk_budget, halved.chunk_budget,
        )
        self._emit("chunk_overflow", chunk_budget=halved.chunk_budget)
        return halved

    def _plan(self, run: _Run, state: RetryState) -> BudgetPlan:
        cap = self._provider.context_window or self._settings.fallback_context_window
        return derive_budget_plan(
            context_window_cap=cap,
            requested_chunk_tokens=state.chunk_budget,
            requested_merge_tokens=state.merge_budget,
            chunk_prompt_overhead=self._prompts.overhead_tokens(
                "chunk", run.request, structured=run.structured,
            ),
            merge_prompt_overhead=self._prompts.overhead_tokens(
                "merge", run.request, structured=run.structured,
            ),
            settings=self._settings,
        )

    # --- Passes ---

    async def _chunk_pass(self, run: _Run, plan: BudgetPlan) -> list[ParsedResponse]:
        chunks = self._planner.chunk_input(run.request.input_text, plan.chunk_input_tokens)
        if not chunks:
            raise EmptyInputError()
        total = len(chunks)
        logger.debug(
            "%s chunking: %d chunks at %d tokens",
            self._provider.name, total, plan.chunk_input_tokens,
        )
        self._emit("chunking", chunk_budget=plan.chunk_input_tokens, chunks=total)
        prompts = [
            self._prompts.build_chunk_prompt(
                run.request,
                chunk.text,
                index=index,
                total=total,
                word_limit=plan.chunk_word_limit,
                structured=run.structured,
            )
            for index, chunk in enumerate(chunks, start=1)
        ]
        responses = await self._fan_out(run, prompts)
        run.note_titles(responses)
        return responses

    async def _merge_passes(
        self,
        run: _Run,
        partials: list[ParsedResponse],
        plan: BudgetPlan,
    ) -> DensificationResult:
        passes = 0
        while len(partials) > 1:
            texts = [p.content for p in partials]
            groups = self._planner.merge_groups(texts, plan.merge_input_tokens)
            if len(groups) >= len(partials):
                logger.warning(
                    "%s merge budget of %d tokens cannot combine %d partials; joining them",
                    self._provider.name, plan.merge_input_tokens, len(partials),
                )
                self._emit("merge_guard", merge_budget=plan.merge_input_tokens, partials=len(partials))
                content = PLAIN_SEPARATOR.join(t.strip() for t in texts if t.strip())
                return DensificationResult(content=content, title=run.first_title)

            passes += 1
            self._emit(
                "merging",
                merge_budget=plan.merge_input_tokens,
                partials=len(partials),
                groups=len(groups),
            )
            pending = [i for i, group in enumerate(groups) if len(group) > 1]
            prompts = [
                self._prompts.build_merge_prompt(
                    run.request,
                    groups[i],
                    word_limit=plan.merge_word_limit,
                    structured=run.structured,
                )
                for i in pending
            ]
            try:
                merged = await self._fan_out(run, prompts)
            except WindowOverflowError as error:
                raise _MergeOverflow(error, partials) from error
            run.note_titles(merged)

            next_partials: list[ParsedResponse] = [
                ParsedResponse(content=group[0]) for group in groups
            ]
            for i, response in zip(pending, merged):
                next_partials[i] = response
            partials = next_partials

        final = partials[0]
        self._emit("done", passes=passes)
        return DensificationResult(content=final.content, title=self._title(final.title, run))

    async def _fan_out(self, run: _Run, prompts: list[str]) -> list[ParsedResponse]:
        """Run prompts on a fixed worker pool; results keep submission order.

        After the first failure workers stop taking new jobs; calls already
        in flight finish. The failure with the lowest index is raised.
        """
        if not prompts:
            return []
        slots: list[ParsedResponse | None] = [None] * len(prompts)
        jobs: deque[int] = deque(range(len(prompts)))
        failures: dict[int, Exception] = {}

        async def worker() -> None:
            while jobs and not failures:
                index = jobs.popleft()
                try:
                    slots[index] = await self._call(run, prompts[index])
                except Exception as error:
                    failures[index] = error

        workers = min(self._provider.max_parallel, len(prompts))
        await asyncio.gather(*(worker() for _ in range(workers)))
        if failures:
            raise failures[min(failures)]
        return [slot for slot in slots if slot is not None]

    # --- Single call ---

    async def _call(self, run: _Run, prompt: str) -> ParsedResponse:
        provider = self._provider
        async with self._limiter.slot(provider.name, provider.max_parallel) as waited:
            if waited:
                logger.debug("%s call waited for a free slot", provider.name)
            try:
                response = await provider.request_text(
                    prompt,
                    system_instruction=self._prompts.system_instruction(),
                    model=run.model,
                    credential=run.credential,
                )
            except Exception as error:
                surfaced = self._classified(error, run)
                if surfaced is error:
                    raise
                raise surfaced from error

        if run.structured:
            parsed = parse_response(response.text)
        else:
            parsed = ParsedResponse(content=response.text.strip())
        if not parsed.content.strip():
            raise ProviderRequestFailed(f"{provider.name} returned empty output.")
        return parsed

    def _classified(self, error: Exception, run: _Run) -> DensifyError:
        """Map a raw backend failure to the error the run reports."""
        category = classify_failure(error)
        details = clean_error_message(str(error)) or type(error).__name__
        backend = self._provider.name

        if category is FailureCategory.WINDOW_OVERFLOW:
            return WindowOverflowError(backend, details)
        if isinstance(error, (
            ProviderRequestTimedOut,
            ProviderLaunchFailed,
            ProviderNotConfiguredError,
            ProviderRequestTransientFailure,
            ProviderRequestRejected,
            ProviderModelUnavailable,
        )):
            return error
        if category in (
            FailureCategory.RATE_LIMITED,
            FailureCategory.TRANSIENT,
            FailureCategory.TIMEOUT,
        ):
            return ProviderRequestTransientFailure(details)
        if category is FailureCategory.MODEL_UNAVAILABLE:
            model = self._provider.resolve_model(run.model)
            return ProviderModelUnavailable(backend, model, details)
        if category is FailureCategory.REJECTED:
            return ProviderRequestRejected(details)
        if isinstance(error, ProviderError):
            return error
        return ProviderRequestFailed(details)

    def _title(self, final_title: str | None, run: _Run) -> str | None:
        if not run.structured:
            return None
        return final_title or run.first_title

    def _emit(self, phase: str, **details: Any) -> None:
        if not callable(self._event_hook):
            return
        payload: dict[str, Any] = {"backend": self._provider.name, "phase": phase}
        payload.update(details)
        try:
            self._event_hook(payload)
        except Exception as exc:
            logger.debug("Densification event hook failed: %s", exc)


class _MergeOverflow(Exception):
    """Carries the partials a failed merge pass started from."""

    def __init__(self, error: WindowOverflowError, partials: list[ParsedResponse]):
        super().__init__(error.details)
        self.error = error
        self.partials = partials
