"""Resources owned by one scheduler run.

The registry tracks everything the scheduler starts on the side (agent
processes, overseers, lifecycle services, bus handlers) and tears it all
down in reverse order from a single ``aclose()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from lisa.errors import LisaError
from lisa.limits import SHUTDOWN_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from lisa.config import LifecycleConfig, ResourceConfig
    from lisa.providers.pty import AgentProcess

logger = logging.getLogger(__name__)

PORT_POLL_INTERVAL = 0.5

type Cleanup = Callable[[], Awaitable[None] | None]


class ResourceStartError(LisaError):
    """A lifecycle resource or setup command failed."""


async def is_port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=1.0)
    except (OSError, TimeoutError):
        return False
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return True


async def wait_for_port(port: int, timeout: float, *, interval: float = PORT_POLL_INTERVAL) -> bool:
    """Poll until something listens on *port*. Returns False on timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if await is_port_in_use(port):
            return True
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(interval)


@dataclass(slots=True)
class ManagedResource:
    name: str
    config: ResourceConfig
    process: asyncio.subprocess.Process | None
    cwd: Path


class ResourceRegistry:
    """Explicit owner of side resources with one deterministic exit hook."""

    def __init__(self) -> None:
        self._cleanups: list[tuple[str, Cleanup]] = []
        self._resources: list[ManagedResource] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._cleanups) + len(self._resources)

    def push(self, name: str, cleanup: Cleanup) -> Callable[[], None]:
        """Register *cleanup*; returns a callable that unregisters it."""
        entry = (name, cleanup)
        self._cleanups.append(entry)

        def discard() -> None:
            with contextlib.suppress(ValueError):
                self._cleanups.remove(entry)

        return discard

    def track_process(self, process: AgentProcess) -> Callable[[], None]:
        return self.push(f"process {process.pid}", process.terminate_and_wait)

    async def start_lifecycle(self, lifecycle: LifecycleConfig, cwd: Path) -> None:
        """Start the configured services and run setup commands.

        Services already listening on their port are left alone. In
        ``validate-only`` mode nothing is started; missing services fail.

        Raises:
            ResourceStartError: If a service does not come up in time or a
                setup command fails. Services started so far are stopped.
        """
        if lifecycle.mode == "skip":
            return
        try:
            for resource in lifecycle.resources:
                if await is_port_in_use(resource.check_port):
                    logger.info(
                        "Resource %r already running on port %d", resource.name, resource.check_port
                    )
                    continue
                if lifecycle.mode == "validate-only":
                    raise ResourceStartError(
                        f"Resource {resource.name!r} is not running on port {resource.check_port}"
                    )
                await self._start_resource(resource, cwd)

            if lifecycle.mode == "auto":
                for command in lifecycle.setup:
                    await _run_setup_command(command, cwd)
        except BaseException:
            await self.stop_resources()
            raise

    async def _start_resource(self, resource: ResourceConfig, base_cwd: Path) -> None:
        cwd = (base_cwd / resource.cwd).resolve() if resource.cwd else base_cwd
        logger.info("Starting resource %r on port %d", resource.name, resource.check_port)
        process = await asyncio.create_subprocess_shell(
            resource.up,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=os.name == "posix",
        )
        self._resources.append(ManagedResource(resource.name, resource, process, cwd))
        if not await wait_for_port(resource.check_port, resource.startup_timeout):
            raise ResourceStartError(
                f"Resource {resource.name!r} failed to start within {resource.startup_timeout:.0f}s"
            )
        logger.info("Resource %r is ready on port %d", resource.name, resource.check_port)

    async def stop_resources(self) -> None:
        """Stop lifecycle services started by this registry."""
        resources, self._resources = self._resources, []
        for managed in reversed(resources):
            logger.info("Stopping resource %r", managed.name)
            try:
                await _stop_resource(managed)
            except OSError as e:
                logger.warning("Failed to stop resource %r: %s", managed.name, e)

    async def aclose(self) -> None:
        """Run every cleanup in reverse registration order. Idempotent."""
        if self._closed:
            return
        self._closed = True
        cleanups, self._cleanups = self._cleanups, []
        for name, cleanup in reversed(cleanups):
            try:
                result = cleanup()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Cleanup of %s failed", name)
        await self.stop_resources()


async def _stop_resource(managed: ManagedResource) -> None:
    process = managed.process
    if managed.config.down != "auto":
        down = await asyncio.create_subprocess_shell(
            managed.config.down,
            cwd=managed.cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await down.wait()
        return
    if process is None or process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        if os.name == "posix":
            os.killpg(process.pid, signal.SIGTERM)
        else:
            process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_TIMEOUT)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()


async def _run_setup_command(command: str, cwd: Path) -> None:
    logger.info("Running setup: %s", command)
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await process.communicate()
    if process.returncode != 0:
        tail = stdout.decode(errors="replace").strip()[-2000:]
        raise ResourceStartError(
            f"Setup command failed with exit code {process.returncode}: {command}\n{tail}"
        )
