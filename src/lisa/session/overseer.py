"""Supervision of running agent processes.

Two independent watchdogs can terminate a provider process:

* ``Overseer`` polls the working tree and kills a process that has not
  changed it for ``stuck_threshold`` seconds.
* ``ErrorLoopDetector`` scans output and kills a process that keeps
  printing error lines without doing anything else, which the overseer
  alone would only catch much later.

Both only ever send one termination signal and both leave a sentinel in the
captured output so the fallback chain can tell the kill apart from a
regular failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from lisa.errors import GitOperationError
from lisa.events import PauseProvider, ResumeProvider
from lisa.limits import ERROR_LOOP_THRESHOLD, GIT_SNAPSHOT_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from lisa.config import OverseerConfig
    from lisa.events import ControlChannel, DomainEvent
    from lisa.models import GitSnapshot

logger = logging.getLogger(__name__)

STUCK_MESSAGE = (
    "\n[lisa-overseer] Provider killed: no git changes detected within the stuck threshold."
    " Eligible for fallback.\n"
)
ERROR_LOOP_MESSAGE = (
    "\n[lisa-overseer] Provider killed: repeated error lines without progress."
    " Eligible for fallback.\n"
)

DEFAULT_ERROR_PATTERN = re.compile(r"^Error ")


class Terminable(Protocol):
    """Process handle capability used by the watchdogs."""

    def terminate(self) -> bool: ...


async def get_git_snapshot(cwd: Path) -> GitSnapshot:
    """Return ``git status --porcelain`` output for *cwd*.

    Raises:
        GitOperationError: If git fails or does not answer in time.
    """
    command = ("git", "status", "--porcelain")
    proc = await asyncio.create_subprocess_exec(
        *command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=GIT_SNAPSHOT_TIMEOUT)
    except TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        raise GitOperationError(command, detail="timed out") from e
    if proc.returncode != 0:
        raise GitOperationError(
            command, returncode=proc.returncode, stderr=stderr.decode(errors="replace").strip()
        )
    return stdout.decode(errors="replace")


class ErrorLoopDetector:
    """Kill a process after ``threshold`` consecutive error lines.

    Blank lines neither advance nor reset the count; any other non-matching
    line resets it. The count carries over between ``check`` calls.
    """

    def __init__(
        self,
        process: Terminable,
        pattern: re.Pattern[str] | str = DEFAULT_ERROR_PATTERN,
        threshold: int = ERROR_LOOP_THRESHOLD,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self._process = process
        self._pattern = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._threshold = threshold
        self._consecutive = 0
        self._killed = False

    @property
    def consecutive(self) -> int:
        return self._consecutive

    def check(self, text: str) -> None:
        if self._killed:
            return
        for line in text.split("\n"):
            trimmed = line.strip()
            if not trimmed:
                continue
            if not self._pattern.search(trimmed):
                self._consecutive = 0
                continue
            self._consecutive += 1
            if self._consecutive >= self._threshold:
                self._killed = True
                logger.warning(
                    "Error loop detected (%d consecutive error lines), terminating provider",
                    self._consecutive,
                )
                self._process.terminate()
                return

    def was_killed(self) -> bool:
        return self._killed


class OverseerState(StrEnum):
    IDLE = "idle"
    WATCHING = "watching"
    KILLED = "killed"


class Overseer:
    """Idle/stuck detection for one running provider process.

    Each tick compares a working-tree snapshot with the previous one. The
    idle clock restarts on every change and on every resume, so time spent
    paused never counts toward the threshold. Snapshot failures are logged
    and otherwise ignored.
    """

    def __init__(
        self,
        process: Terminable,
        cwd: Path,
        config: OverseerConfig,
        *,
        snapshot: Callable[[Path], Awaitable[GitSnapshot]] = get_git_snapshot,
        control: ControlChannel | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._process = process
        self._cwd = cwd
        self._config = config
        self._snapshot = snapshot
        self._control = control
        self._clock = clock
        self._state = OverseerState.IDLE
        self._paused = False
        self._last_snapshot: GitSnapshot | None = None
        self._last_change = clock()
        self._task: asyncio.Task[None] | None = None
        self._attached = False
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    @property
    def state(self) -> OverseerState:
        return self._state

    @property
    def paused(self) -> bool:
        return self._paused

    def was_killed(self) -> bool:
        return self._state == OverseerState.KILLED

    def start(self) -> None:
        """Attach to the control channel and start the periodic check."""
        if not self.enabled or self._stopped or self._task is not None:
            return
        if self._control is not None:
            self._control.add_handler(self._on_control)
            self._attached = True
        self._task = asyncio.create_task(self._loop())

    async def _loop(self) -> None:
        while self._state != OverseerState.KILLED:
            await asyncio.sleep(self._config.check_interval)
            await self.check()

    def _on_control(self, event: DomainEvent) -> None:
        if isinstance(event, PauseProvider):
            self.pause()
        elif isinstance(event, ResumeProvider):
            self.resume()

    def pause(self) -> None:
        """Freeze idle evaluation; the baseline snapshot is kept."""
        self._paused = True

    def resume(self) -> None:
        """Resume evaluation with a fresh idle clock."""
        self._paused = False
        self._last_change = self._clock()

    async def check(self) -> None:
        """Run one supervision tick."""
        if not self.enabled or self._paused or self._state == OverseerState.KILLED:
            return

        try:
            snapshot = await self._snapshot(self._cwd)
        except Exception as e:
            logger.debug("Overseer snapshot failed for %s: %s", self._cwd, e)
            return

        if self._paused or self._state == OverseerState.KILLED:
            return

        now = self._clock()
        if self._last_snapshot is None:
            self._last_snapshot = snapshot
            self._last_change = now
            self._state = OverseerState.WATCHING
            return

        if snapshot != self._last_snapshot:
            self._last_snapshot = snapshot
            self._last_change = now
            return

        idle = now - self._last_change
        if idle >= self._config.stuck_threshold:
            logger.warning(
                "No working-tree changes in %s for %.0fs, terminating provider", self._cwd, idle
            )
            self._state = OverseerState.KILLED
            self._cancel_timer()
            self._process.terminate()

    def _cancel_timer(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        with contextlib.suppress(RuntimeError):
            if task is asyncio.current_task():
                return
        task.cancel()

    def stop(self) -> None:
        """Cancel the timer and detach from the control channel. Idempotent."""
        self._stopped = True
        self._cancel_timer()
        if self._attached and self._control is not None:
            self._control.remove_handler(self._on_control)
            self._attached = False
