"""Agent process management via PTY, with a plain-pipe fallback.

Running the agent inside a pseudo-terminal makes it see an interactive
terminal (isatty is true), so it line-buffers its output instead of
flushing in large pipe-sized blocks. Platforms without the ``pty`` module
fall back to pipes.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import signal
import sys
from collections import deque
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from dataclasses import dataclass
from time import monotonic
from typing import TYPE_CHECKING, Literal

import psutil

from lisa.ansi.cleaner import split_incomplete_tail, strip_ansi
from lisa.limits import OUTPUT_LIMIT, READ_BUFFER_SIZE, SHUTDOWN_TIMEOUT

if TYPE_CHECKING:
    from pathlib import Path

try:
    import pty
except ImportError:  # Windows
    pty = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)

type StreamName = Literal["stdout", "stderr"]


@dataclass(frozen=True, slots=True)
class OutputChunk:
    """A piece of cleaned output from one stream."""

    stream: StreamName
    text: str


OutputListener = Callable[[OutputChunk], None]


def pty_supported() -> bool:
    """Return True when commands can be run inside a pseudo-terminal."""
    return pty is not None and os.name == "posix"


def build_pty_argv(command: str, system: str | None = None) -> list[str] | None:
    """Build an argv running *command* inside ``script(1)``, or None if unsupported.

    Used where an external wrapper is preferred over an in-process PTY.
    """
    current = system or sys.platform
    if current == "darwin":
        # -q: quiet, -F: flush after each write
        return ["script", "-qF", "/dev/null", "sh", "-c", command]
    if current.startswith("linux"):
        # -q: quiet, -e: return child exit code, -f: flush output
        return ["script", "-qef", "-c", command, "/dev/null"]
    return None


async def _buffered_read(
    reader: asyncio.StreamReader,
    buffer_size: int,
    buffer_period: float = 0.01,
    max_buffer_duration: float = 0.016,
) -> bytes:
    """Read with a short batching window to reduce chunk frequency.

    Returns an empty bytes object at end of stream.
    """
    try:
        data = await reader.read(buffer_size)
    except OSError:
        # EIO from a PTY master once the child side has closed.
        data = b""
    if data:
        buffer_time = monotonic() + max_buffer_duration
        with contextlib.suppress(TimeoutError):
            while len(data) < buffer_size and (now := monotonic()) < buffer_time:
                async with asyncio.timeout(min(buffer_time - now, buffer_period)):
                    try:
                        if chunk := await reader.read(buffer_size - len(data)):
                            data += chunk
                        else:
                            break
                    except OSError:
                        break
    return data


class _StreamDecoder:
    """Incremental UTF-8 decoding plus ANSI cleaning that survives split reads."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> str:
        text = self._pending + self._decoder.decode(data)
        ready, self._pending = split_incomplete_tail(text)
        return strip_ansi(ready)

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return strip_ansi(text)


class AgentProcess:
    """A spawned agent subprocess whose output is streamed as cleaned chunks.

    Every chunk is delivered to the registered listeners before ``wait()``
    resolves, so anything watching the output has seen all of it by the
    time the exit code is known.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        is_pty: bool,
        master_fd: int | None = None,
        output_limit: int = OUTPUT_LIMIT,
    ) -> None:
        self._process = process
        self.is_pty = is_pty
        self._master_fd = master_fd
        self._listeners: list[OutputListener] = []
        self._output: deque[str] = deque()
        self._output_chars = 0
        self._output_limit = output_limit
        self._queues: list[asyncio.Queue[OutputChunk | None]] = []
        self._exit_event = asyncio.Event()
        self._terminated = False
        self.returncode: int | None = None
        self._task = asyncio.create_task(self._run())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def terminated(self) -> bool:
        """True once a termination signal has been sent."""
        return self._terminated

    @property
    def exited(self) -> bool:
        return self._exit_event.is_set()

    def add_listener(self, listener: OutputListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: OutputListener) -> None:
        self._listeners = [existing for existing in self._listeners if existing is not listener]

    async def _run(self) -> None:
        try:
            if self._master_fd is not None:
                await self._read_pty(self._master_fd)
            else:
                readers = []
                if self._process.stdout is not None:
                    readers.append(self._read_stream(self._process.stdout, "stdout"))
                if self._process.stderr is not None:
                    readers.append(self._read_stream(self._process.stderr, "stderr"))
                await asyncio.gather(*readers)
        finally:
            self.returncode = await self._process.wait()
            for queue in self._queues:
                queue.put_nowait(None)
            self._exit_event.set()

    async def _read_pty(self, master_fd: int) -> None:
        reader = asyncio.StreamReader(READ_BUFFER_SIZE)
        protocol = asyncio.StreamReaderProtocol(reader)
        loop = asyncio.get_running_loop()
        transport, _ = await loop.connect_read_pipe(
            lambda: protocol, os.fdopen(master_fd, "rb", 0)
        )
        try:
            await self._pump(reader, "stdout")
        finally:
            transport.close()

    async def _read_stream(self, reader: asyncio.StreamReader, stream: StreamName) -> None:
        await self._pump(reader, stream)

    async def _pump(self, reader: asyncio.StreamReader, stream: StreamName) -> None:
        decoder = _StreamDecoder()
        while data := await _buffered_read(reader, READ_BUFFER_SIZE):
            self._emit(stream, decoder.feed(data))
        self._emit(stream, decoder.flush())

    def _emit(self, stream: StreamName, text: str) -> None:
        if not text:
            return
        chunk = OutputChunk(stream, text)
        self._record_output(text)
        for listener in list(self._listeners):
            try:
                listener(chunk)
            except Exception:
                logger.exception("Output listener failed")
        for queue in self._queues:
            queue.put_nowait(chunk)

    def _record_output(self, text: str) -> None:
        self._output.append(text)
        self._output_chars += len(text)
        while self._output_chars > self._output_limit and len(self._output) > 1:
            oldest = self._output.popleft()
            self._output_chars -= len(oldest)

    def get_output(self) -> str:
        """Cleaned output captured so far (most recent ``output_limit`` chars)."""
        return "".join(self._output)

    async def chunks(self) -> AsyncIterator[OutputChunk]:
        """Iterate over output chunks produced from now until exit."""
        queue: asyncio.Queue[OutputChunk | None] = asyncio.Queue()
        if self.exited:
            return
        self._queues.append(queue)
        try:
            while (chunk := await queue.get()) is not None:
                yield chunk
        finally:
            self._queues = [q for q in self._queues if q is not queue]

    async def wait(self) -> int:
        """Wait until the process exited and all output was delivered."""
        await self._exit_event.wait()
        assert self.returncode is not None
        return self.returncode

    def _process_tree(self) -> list[psutil.Process]:
        try:
            root = psutil.Process(self.pid)
            return [root, *root.children(recursive=True)]
        except psutil.Error:
            return []

    def _signal_tree(self, sig: int) -> None:
        tree = self._process_tree()
        if os.name == "posix":
            # The child leads its own session, so its pid is the group id.
            with contextlib.suppress(ProcessLookupError, PermissionError):
                os.killpg(self.pid, sig)
        for proc in tree:
            with contextlib.suppress(psutil.Error):
                proc.send_signal(sig)

    def terminate(self, grace: float | None = SHUTDOWN_TIMEOUT) -> bool:
        """Send one termination signal to the process tree.

        The tree is killed if it is still alive *grace* seconds later (pass
        None to never escalate). Idempotent: returns False (and sends
        nothing) if a termination was already requested or the process has
        exited.
        """
        if self._terminated or self.returncode is not None:
            return False
        self._terminated = True
        logger.debug("Terminating agent process %s", self.pid)
        self._signal_tree(signal.SIGTERM)
        if grace is not None:
            asyncio.get_running_loop().call_later(grace, self._escalate)
        return True

    def _escalate(self) -> None:
        if not self.exited:
            logger.debug("Agent process %s ignored SIGTERM, killing", self.pid)
            self.kill()

    def kill(self) -> None:
        """Forcefully kill the process tree."""
        self._terminated = True
        if self.returncode is None:
            self._signal_tree(signal.SIGKILL if os.name == "posix" else signal.SIGTERM)

    async def terminate_and_wait(self, grace: float = SHUTDOWN_TIMEOUT) -> int:
        """Terminate, then kill if the process has not exited within *grace*."""
        self.terminate(grace=None)
        try:
            return await asyncio.wait_for(asyncio.shield(self.wait()), timeout=grace)
        except TimeoutError:
            self.kill()
            return await self.wait()


async def spawn(
    command: str | Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    use_pty: bool = True,
) -> AgentProcess:
    """Spawn *command* (shell string or argv) with streamed, cleaned output.

    Runs inside a pseudo-terminal when supported and requested; otherwise
    stdout and stderr are plain pipes. Check ``AgentProcess.is_pty``.
    """
    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    if use_pty and pty_supported():
        master, slave = pty.openpty()
        process_env.setdefault("TERM", "xterm-256color")
        try:
            process = await _create(
                command, cwd=cwd, env=process_env, stdin=slave, stdout=slave, stderr=slave
            )
        except BaseException:
            os.close(master)
            raise
        finally:
            os.close(slave)
        return AgentProcess(process, is_pty=True, master_fd=master)

    process = await _create(
        command,
        cwd=cwd,
        env=process_env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    return AgentProcess(process, is_pty=False)


async def _create(
    command: str | Sequence[str],
    *,
    cwd: str | Path | None,
    env: Mapping[str, str],
    stdin: int,
    stdout: int,
    stderr: int,
) -> asyncio.subprocess.Process:
    kwargs = {
        "cwd": str(cwd) if cwd is not None else None,
        "env": dict(env),
        "stdin": stdin,
        "stdout": stdout,
        "stderr": stderr,
        "start_new_session": os.name == "posix",
    }
    if isinstance(command, str):
        return await asyncio.create_subprocess_shell(command, **kwargs)
    return await asyncio.create_subprocess_exec(*command, **kwargs)
