"""Provider adapter: run one coding-agent CLI for one prompt.

A provider spawns its agent through the PTY spawner and wires the two
watchdogs (overseer and error-loop detector) to the live process. Every
output chunk reaches the watchdogs, the session log file and the caller's
``on_output`` callback before the exit code is known.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shutil
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, ClassVar, Protocol, TextIO

from lisa.errors import ProviderUnavailableError
from lisa.limits import PROVIDER_TIMEOUT
from lisa.models import RunResult
from lisa.providers.pty import spawn
from lisa.session.overseer import (
    DEFAULT_ERROR_PATTERN,
    ERROR_LOOP_MESSAGE,
    STUCK_MESSAGE,
    ErrorLoopDetector,
    Overseer,
    get_git_snapshot,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from pathlib import Path

    from lisa.config import OverseerConfig
    from lisa.events import ControlChannel
    from lisa.models import GitSnapshot
    from lisa.providers.pty import AgentProcess, OutputChunk


logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "\n[lisa] Provider timed out after {seconds:.0f}s.\n"


@dataclass(slots=True)
class RunOptions:
    """Per-run settings handed to a provider."""

    cwd: Path
    log_file: Path | None = None
    model: str | None = None
    overseer: OverseerConfig | None = None
    env: dict[str, str] = field(default_factory=dict)
    on_spawn: Callable[[AgentProcess], None] | None = None
    on_output: Callable[[OutputChunk], None] | None = None
    should_abort: Callable[[], bool] | None = None
    control: ControlChannel | None = None
    snapshot: Callable[[Path], Awaitable[GitSnapshot]] | None = None
    timeout: float = PROVIDER_TIMEOUT
    use_pty: bool = True

    def with_model(self, model: str | None) -> RunOptions:
        return replace(self, model=model)


class Provider(Protocol):
    """Anything that can run a prompt against one coding agent."""

    name: str

    async def is_available(self) -> bool: ...

    async def run(self, prompt: str, options: RunOptions) -> RunResult: ...


class CliProvider:
    """Base class for agents driven through a non-interactive CLI invocation.

    Subclasses declare the executable and build the argument list; the
    supervision wiring is shared.
    """

    name: ClassVar[str]
    executables: ClassVar[tuple[str, ...]]
    error_pattern: ClassVar[re.Pattern[str]] = DEFAULT_ERROR_PATTERN
    prefers_pty: ClassVar[bool] = True

    def resolve_executable(self) -> str | None:
        for candidate in self.executables:
            if path := shutil.which(candidate):
                return path
        return None

    async def is_available(self) -> bool:
        return self.resolve_executable() is not None

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        raise NotImplementedError

    def missing_requirement(self) -> str | None:
        """Return a reason the agent cannot run here, or None."""
        return None

    def parse_output(self, raw: str) -> str:
        return raw

    async def run(self, prompt: str, options: RunOptions) -> RunResult:
        """Run the agent once under supervision.

        Raises:
            ProviderUnavailableError: If the executable is not on PATH.
        """
        start = time.monotonic()
        executable = self.resolve_executable()
        if executable is None:
            raise ProviderUnavailableError(self.name, "command not found")
        if problem := self.missing_requirement():
            return RunResult(success=False, output=problem, duration=0.0)

        argv = [executable, *self.build_args(prompt, options)]
        logger.info("Running %s%s in %s", self.name, _model_suffix(options.model), options.cwd)

        with contextlib.ExitStack() as stack:
            log: TextIO | None = None
            if options.log_file is not None:
                options.log_file.parent.mkdir(parents=True, exist_ok=True)
                log = stack.enter_context(options.log_file.open("a", encoding="utf-8"))

            try:
                process = await spawn(
                    argv,
                    cwd=options.cwd,
                    env=options.env,
                    use_pty=options.use_pty and self.prefers_pty,
                )
            except OSError as e:
                logger.error("Could not start %s: %s", self.name, e)
                return RunResult(
                    success=False,
                    output=f"Could not start {self.name}: {e}",
                    duration=time.monotonic() - start,
                )
            detector = ErrorLoopDetector(process, self.error_pattern)
            overseer: Overseer | None = None
            if options.overseer is not None and options.overseer.enabled:
                overseer = Overseer(
                    process,
                    options.cwd,
                    options.overseer,
                    snapshot=options.snapshot or get_git_snapshot,
                    control=options.control,
                )

            def on_chunk(chunk: OutputChunk) -> None:
                if chunk.stream == "stdout":
                    detector.check(chunk.text)
                if log is not None:
                    log.write(chunk.text)
                    log.flush()
                if options.on_output is not None:
                    options.on_output(chunk)

            # The reader task has not run yet, so no chunk can be missed here.
            process.add_listener(on_chunk)
            if options.on_spawn is not None:
                options.on_spawn(process)
            if overseer is not None:
                overseer.start()

            timed_out = False
            try:
                async with asyncio.timeout(options.timeout):
                    exit_code = await process.wait()
            except TimeoutError:
                timed_out = True
                logger.warning("%s exceeded %.0fs, terminating", self.name, options.timeout)
                exit_code = await process.terminate_and_wait()
            except asyncio.CancelledError:
                process.kill()
                raise
            finally:
                if overseer is not None:
                    overseer.stop()
                process.remove_listener(on_chunk)

            output = self.parse_output(process.get_output())
            sentinel = ""
            if overseer is not None and overseer.was_killed():
                sentinel = STUCK_MESSAGE
            elif detector.was_killed():
                sentinel = ERROR_LOOP_MESSAGE
            elif timed_out:
                sentinel = TIMEOUT_MESSAGE.format(seconds=options.timeout)
            if sentinel:
                output += sentinel
                if log is not None:
                    log.write(sentinel)

        success = exit_code == 0 and not process.terminated
        duration = time.monotonic() - start
        logger.debug("%s exited with %s after %.1fs", self.name, exit_code, duration)
        return RunResult(success=success, output=output, duration=duration)


def _model_suffix(model: str | None) -> str:
    return f" ({model})" if model else ""
