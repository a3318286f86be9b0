"""Tests for the stuck-provider overseer, driven by a fake clock and snapshot."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from lisa.config import OverseerConfig
from lisa.events import InMemoryEventBus, PauseProvider, ResumeProvider
from lisa.session.overseer import Overseer, OverseerState
from tests.helpers import CountingProcess

pytestmark = pytest.mark.unit

CONFIG = OverseerConfig(enabled=True, check_interval=1, stuck_threshold=10)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class ScriptedSnapshot:
    def __init__(self, value: str = "") -> None:
        self.value = value
        self.calls = 0
        self.error: Exception | None = None

    async def __call__(self, cwd: Path) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.value


def _overseer(
    *,
    config: OverseerConfig = CONFIG,
    control: InMemoryEventBus | None = None,
) -> tuple[Overseer, CountingProcess, FakeClock, ScriptedSnapshot]:
    process = CountingProcess()
    clock = FakeClock()
    snapshot = ScriptedSnapshot()
    overseer = Overseer(
        process, Path("/repo"), config, snapshot=snapshot, control=control, clock=clock
    )
    return overseer, process, clock, snapshot


async def test_first_tick_sets_baseline() -> None:
    overseer, process, _, _ = _overseer()
    await overseer.check()
    assert overseer.state == OverseerState.WATCHING
    assert process.terminate_calls == 0


async def test_idle_past_threshold_kills_once() -> None:
    overseer, process, clock, _ = _overseer()
    await overseer.check()

    clock.now = 9.9
    await overseer.check()
    assert process.terminate_calls == 0

    clock.now = 10.0
    await overseer.check()
    assert process.terminate_calls == 1
    assert overseer.was_killed()

    clock.now = 50.0
    await overseer.check()
    assert process.terminate_calls == 1


async def test_change_resets_idle_clock() -> None:
    overseer, process, clock, snapshot = _overseer()
    await overseer.check()

    clock.now = 8.0
    snapshot.value = " M src/app.py\n"
    await overseer.check()

    clock.now = 17.0
    await overseer.check()
    assert process.terminate_calls == 0

    clock.now = 18.0
    await overseer.check()
    assert process.terminate_calls == 1


async def test_pause_freezes_and_resume_restarts_clock() -> None:
    overseer, process, clock, snapshot = _overseer()
    await overseer.check()

    overseer.pause()
    clock.now = 100.0
    await overseer.check()
    assert process.terminate_calls == 0
    assert snapshot.calls == 1

    overseer.resume()
    clock.now = 109.0
    await overseer.check()
    assert process.terminate_calls == 0

    clock.now = 110.0
    await overseer.check()
    assert process.terminate_calls == 1


async def test_repeated_pause_resume_cycles() -> None:
    overseer, process, clock, snapshot = _overseer()
    await overseer.check()

    for cycle in range(5):
        overseer.pause()
        clock.now += 100.0
        await overseer.check()
        assert overseer.paused
        overseer.resume()
        clock.now += 9.0
        await overseer.check()
        assert process.terminate_calls == 0, f"killed in cycle {cycle}"

    assert snapshot.calls == 6
    clock.now += 1.0
    await overseer.check()
    assert process.terminate_calls == 1


async def test_pause_resume_over_control_channel() -> None:
    bus = InMemoryEventBus()
    overseer, process, clock, _ = _overseer(control=bus)
    overseer.start()
    try:
        bus.publish_nowait(PauseProvider())
        assert overseer.paused
        bus.publish_nowait(ResumeProvider())
        assert not overseer.paused
    finally:
        overseer.stop()
    assert bus.handler_count == 0


async def test_snapshot_errors_never_kill() -> None:
    overseer, process, clock, snapshot = _overseer()
    snapshot.error = RuntimeError("git exploded")
    for step in range(5):
        clock.now = step * 100.0
        await overseer.check()
    assert process.terminate_calls == 0
    assert not overseer.was_killed()
    overseer.stop()
    overseer.stop()


async def test_disabled_overseer_never_checks() -> None:
    overseer, process, clock, snapshot = _overseer(config=OverseerConfig(enabled=False))
    overseer.start()
    await overseer.check()
    assert snapshot.calls == 0
    overseer.stop()


async def test_timer_loop_kills_stuck_process() -> None:
    config = OverseerConfig(enabled=True, check_interval=0.01, stuck_threshold=0.05)
    process = CountingProcess()
    overseer = Overseer(process, Path("/repo"), config, snapshot=ScriptedSnapshot())
    overseer.start()
    try:
        async with asyncio.timeout(5):
            while not overseer.was_killed():
                await asyncio.sleep(0.01)
    finally:
        overseer.stop()
    assert process.terminate_calls == 1


def test_threshold_must_cover_interval() -> None:
    with pytest.raises(ValueError):
        OverseerConfig(check_interval=30, stuck_threshold=10)
