"""One scheduler per workspace.

Lock files live in the lisa cache root, keyed by the workspace hash, so two
``lisa run`` invocations on the same workspace cannot hand out the same
issues or fight over worktrees.
"""

from __future__ import annotations

import contextlib
import os
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING

from filelock import FileLock, Timeout

from lisa.errors import InstanceLockedError
from lisa.paths import get_cache_root, project_hash

if TYPE_CHECKING:
    from pathlib import Path

LOCKS_DIR_NAME = "locks"


@dataclass(frozen=True, slots=True)
class LockInfo:
    """Process holding the lock."""

    pid: int
    hostname: str
    workspace: str | None = None


class InstanceLock:
    """Non-blocking advisory lock for one workspace.

    Holder info is kept in a separate ``.info`` file because filelock
    truncates the lock file on every acquire attempt. A lock left behind by
    a dead process on this host is reclaimed.
    """

    def __init__(self, workspace: Path, *, locks_dir: Path | None = None) -> None:
        self._workspace = workspace.resolve()
        self._locks_dir = locks_dir if locks_dir is not None else get_cache_root() / LOCKS_DIR_NAME
        self._locks_dir.mkdir(parents=True, exist_ok=True)

        key = project_hash(workspace)
        self._lock_path = self._locks_dir / f"{key}.lock"
        self._info_path = self._locks_dir / f"{key}.info"
        self._lock = FileLock(str(self._lock_path), blocking=False)
        self._acquired = False

    def acquire(self, *, _retry_stale: bool = True) -> bool:
        """Try to take the lock. Returns False if another instance holds it."""
        if self._acquired:
            return True
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            if _retry_stale:
                holder = self.get_holder_info()
                if holder is not None and self._is_stale_holder(holder):
                    self._cleanup_stale_lock_files()
                    self._lock = FileLock(str(self._lock_path), blocking=False)
                    return self.acquire(_retry_stale=False)
            return False
        self._write_holder_info()
        self._acquired = True
        return True

    @staticmethod
    def _pid_is_running(pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True

    def _is_stale_holder(self, holder: LockInfo) -> bool:
        if holder.pid == os.getpid():
            return False
        if holder.hostname not in {"", "unknown", socket.gethostname()}:
            return False
        return not self._pid_is_running(holder.pid)

    def _cleanup_stale_lock_files(self) -> None:
        with contextlib.suppress(OSError):
            self._lock_path.unlink(missing_ok=True)
        with contextlib.suppress(OSError):
            self._info_path.unlink(missing_ok=True)

    def release(self) -> None:
        if not self._acquired:
            return
        with contextlib.suppress(OSError):
            self._lock.release()
            self._lock_path.unlink(missing_ok=True)
            self._info_path.unlink(missing_ok=True)
        self._acquired = False

    def _write_holder_info(self) -> None:
        # The lock works without it; only the error message gets poorer.
        with contextlib.suppress(OSError):
            self._info_path.write_text(
                f"{os.getpid()}\n{socket.gethostname()}\n{self._workspace}\n"
            )

    def get_holder_info(self) -> LockInfo | None:
        try:
            content = self._info_path.read_text().strip().split("\n")
            if len(content) >= 3:
                return LockInfo(pid=int(content[0]), hostname=content[1], workspace=content[2])
            if len(content) == 2:
                return LockInfo(pid=int(content[0]), hostname=content[1])
            if len(content) == 1:
                return LockInfo(pid=int(content[0]), hostname="unknown")
        except (OSError, ValueError):
            pass
        return None

    @property
    def is_held(self) -> bool:
        return self._acquired

    def __enter__(self) -> InstanceLock:
        if not self.acquire():
            holder = self.get_holder_info()
            where = f" by PID {holder.pid} on {holder.hostname}" if holder else ""
            raise InstanceLockedError(f"Workspace {self._workspace} is locked{where}")
        return self

    def __exit__(self, *args: object) -> None:
        self.release()
