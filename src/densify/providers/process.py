"""External process execution with stdin input and a hard timeout."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from densify.providers.parsing import summarize_failure

logger = logging.getLogger(__name__)


class ProcessError(Exception):
    """Base for process execution failures."""


class ProcessTimeoutError(ProcessError):
    """The process was force-terminated after exceeding its timeout."""

    def __init__(self, binary: str, timeout_seconds: float):
        super().__init__(f"{binary} timed out after {timeout_seconds:g} seconds")
        self.binary = binary
        self.timeout_seconds = timeout_seconds


class ProcessLaunchError(ProcessError):
    """The process could not be started."""

    def __init__(self, binary: str, reason: str):
        super().__init__(f"Failed to launch {binary}: {reason}")
        self.binary = binary
        self.reason = reason


class ProcessExitError(ProcessError):
    """The process exited on its own with a non-zero status."""

    def __init__(self, binary: str, exit_code: int, details: str):
        super().__init__(details)
        self.binary = binary
        self.exit_code = exit_code
        self.details = details


@dataclass(frozen=True)
class ProcessOutput:
    stdout: str
    stderr: str
    duration_ms: int = 0


class ProcessExecutor:
    """Runs one external command to completion, failure or timeout."""

    async def run(
        self,
        binary: str,
        args: Sequence[str],
        stdin_input: str,
        timeout: float,
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
    ) -> ProcessOutput:
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
        except OSError as e:
            raise ProcessLaunchError(binary, str(e)) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate((stdin_input or "").encode("utf-8")),
                timeout=timeout,
            )
        except TimeoutError:
            # Only the timer path reaches here; a natural exit that raced
            # the timer has already been reaped and kill() is a no-op.
            await _terminate(process)
            logger.warning("%s killed after %.1fs timeout", binary, timeout)
            raise ProcessTimeoutError(binary, timeout) from None
        except asyncio.CancelledError:
            await _terminate(process)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        duration_ms = int((time.monotonic() - start) * 1000)

        if process.returncode != 0:
            details = summarize_failure(
                stdout,
                stderr,
                fallback=f"{binary} exited with status {process.returncode}.",
            )
            logger.debug(
                "%s exited with %s after %dms: %s",
                binary, process.returncode, duration_ms, details,
            )
            raise ProcessExitError(binary, int(process.returncode or 0), details)

        return ProcessOutput(stdout=stdout, stderr=stderr, duration_ms=duration_ms)


async def _terminate(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
