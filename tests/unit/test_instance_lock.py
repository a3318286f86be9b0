"""Tests for the per-workspace instance lock."""

from __future__ import annotations

import os
import socket
from pathlib import Path

import pytest

from lisa.errors import InstanceLockedError
from lisa.instance_lock import InstanceLock

pytestmark = pytest.mark.unit


@pytest.fixture
def locks_dir(tmp_path: Path) -> Path:
    return tmp_path / "locks"


def test_second_lock_is_refused(tmp_path: Path, locks_dir: Path) -> None:
    first = InstanceLock(tmp_path, locks_dir=locks_dir)
    second = InstanceLock(tmp_path, locks_dir=locks_dir)

    assert first.acquire()
    try:
        assert not second.acquire()
        holder = second.get_holder_info()
        assert holder is not None
        assert holder.pid == os.getpid()
        assert holder.hostname == socket.gethostname()
    finally:
        first.release()

    assert second.acquire()
    second.release()


def test_context_manager_raises_when_held(tmp_path: Path, locks_dir: Path) -> None:
    with InstanceLock(tmp_path, locks_dir=locks_dir) as held:
        assert held.is_held
        with pytest.raises(InstanceLockedError, match=f"PID {os.getpid()}"):
            with InstanceLock(tmp_path, locks_dir=locks_dir):
                pass
    assert not held.is_held


def test_different_workspaces_do_not_conflict(tmp_path: Path, locks_dir: Path) -> None:
    with InstanceLock(tmp_path / "a", locks_dir=locks_dir):
        with InstanceLock(tmp_path / "b", locks_dir=locks_dir) as other:
            assert other.is_held


def test_release_removes_lock_files(tmp_path: Path, locks_dir: Path) -> None:
    lock = InstanceLock(tmp_path, locks_dir=locks_dir)
    lock.acquire()
    lock.release()
    lock.release()
    assert list(locks_dir.iterdir()) == []
