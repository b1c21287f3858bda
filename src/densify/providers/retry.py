"""Caller-layer retry for transient backend failures.

The orchestrator never retries rate limits or timeouts itself; the
service wraps a whole densification run in ``call_with_provider_retry``.
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from densify.config import RetryConfig
from densify.exceptions import is_retryable_provider_failure

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderRetryPolicy:
    """Retry policy for densification runs."""

    max_attempts: int = 2
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 8.0
    jitter_seconds: float = 0.25

    @classmethod
    def from_config(cls, retry: RetryConfig) -> ProviderRetryPolicy:
        max_attempts = max(1, min(10, int(retry.max_attempts or 1)))
        base_delay = max(0.0, float(retry.base_delay_seconds))
        max_delay = max(base_delay, max(0.0, float(retry.max_delay_seconds)))
        jitter = max(0.0, float(retry.jitter_seconds))
        return cls(
            max_attempts=max_attempts,
            base_delay_seconds=base_delay,
            max_delay_seconds=max_delay,
            jitter_seconds=jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        delay = min(
            self.max_delay_seconds,
            self.base_delay_seconds * (2 ** (attempt - 1)),
        )
        if self.jitter_seconds > 0:
            delay += random.uniform(0.0, self.jitter_seconds)
        return delay


async def call_with_provider_retry(
    invoke: Callable[[], Awaitable[T]],
    *,
    policy: ProviderRetryPolicy,
    should_retry: Callable[[BaseException], bool] | None = None,
    on_failure: Callable[[int, int, BaseException, int], None] | None = None,
) -> T:
    """Invoke an async backend run with a queued retry policy."""
    decider = should_retry or is_retryable_provider_failure
    attempts = deque(range(1, policy.max_attempts + 1))
    last_error: BaseException | None = None

    while attempts:
        attempt = attempts.popleft()
        try:
            return await invoke()
        except Exception as error:
            last_error = error
            remaining = len(attempts)
            retryable = decider(error)
            if on_failure is not None:
                on_failure(attempt, policy.max_attempts, error, remaining)
            if not retryable or remaining <= 0:
                raise
            delay = policy.delay_for(attempt)
            if delay > 0:
                await asyncio.sleep(delay)

    if last_error is not None:
        raise last_error
    raise RuntimeError("provider retry queue exhausted without attempts")
