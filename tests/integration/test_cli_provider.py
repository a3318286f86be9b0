"""Integration tests for the supervised CLI provider run against real processes."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

import pytest

from lisa.config import OverseerConfig
from lisa.errors import ProviderUnavailableError
from lisa.limits import ERROR_LOOP_THRESHOLD
from lisa.providers.base import TIMEOUT_MESSAGE, CliProvider, RunOptions
from lisa.session.overseer import ERROR_LOOP_MESSAGE, STUCK_MESSAGE

if TYPE_CHECKING:
    from collections.abc import Sequence

    from lisa.providers.pty import AgentProcess, OutputChunk

pytestmark = pytest.mark.integration


class ScriptProvider(CliProvider):
    """Runs the prompt as a shell script."""

    name = "script"
    executables: ClassVar[tuple[str, ...]] = ("sh",)
    prefers_pty = False

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        return ["-c", prompt]


class MissingProvider(ScriptProvider):
    name = "missing"
    executables: ClassVar[tuple[str, ...]] = ("lisa-no-such-agent",)


async def _frozen_snapshot(cwd: Path) -> str:
    return " M nothing-changes.txt\n"


async def test_successful_run(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "session.log"
    spawned: list[AgentProcess] = []
    chunks: list[OutputChunk] = []
    options = RunOptions(
        cwd=tmp_path, log_file=log_file, on_spawn=spawned.append, on_output=chunks.append
    )

    result = await ScriptProvider().run("echo working; echo done", options)

    assert result.success
    assert "working" in result.output
    assert "done" in result.output
    assert len(spawned) == 1
    assert "done" in "".join(chunk.text for chunk in chunks)
    assert "done" in log_file.read_text()


async def test_runs_in_cwd(tmp_path: Path) -> None:
    result = await ScriptProvider().run("pwd", RunOptions(cwd=tmp_path))
    assert Path(result.output.strip()).resolve() == tmp_path.resolve()


async def test_nonzero_exit_fails(tmp_path: Path) -> None:
    result = await ScriptProvider().run("echo nope; exit 2", RunOptions(cwd=tmp_path))
    assert not result.success
    assert "nope" in result.output


async def test_error_loop_is_killed(tmp_path: Path) -> None:
    script = (
        f"i=0; while [ $i -lt {ERROR_LOOP_THRESHOLD + 5} ]; do "
        'echo "Error 429: rate limited"; i=$((i+1)); done; sleep 30'
    )
    log_file = tmp_path / "session.log"

    result = await ScriptProvider().run(
        script, RunOptions(cwd=tmp_path, log_file=log_file, timeout=20)
    )

    assert not result.success
    assert result.output.endswith(ERROR_LOOP_MESSAGE)
    assert result.duration < 20
    assert ERROR_LOOP_MESSAGE.strip() in log_file.read_text()


async def test_interleaved_progress_is_not_an_error_loop(tmp_path: Path) -> None:
    script = (
        f"i=0; while [ $i -lt {ERROR_LOOP_THRESHOLD + 5} ]; do "
        'echo "Error 500"; echo "retrying"; i=$((i+1)); done'
    )
    result = await ScriptProvider().run(script, RunOptions(cwd=tmp_path))
    assert result.success
    assert ERROR_LOOP_MESSAGE not in result.output


async def test_timeout_terminates(tmp_path: Path) -> None:
    result = await ScriptProvider().run("sleep 30", RunOptions(cwd=tmp_path, timeout=0.5))
    assert not result.success
    assert result.output.endswith(TIMEOUT_MESSAGE.format(seconds=0.5))
    assert result.duration < 20


async def test_overseer_kills_stuck_provider(tmp_path: Path) -> None:
    options = RunOptions(
        cwd=tmp_path,
        overseer=OverseerConfig(enabled=True, check_interval=0.1, stuck_threshold=0.3),
        snapshot=_frozen_snapshot,
        timeout=20,
    )

    result = await ScriptProvider().run("sleep 30", options)

    assert not result.success
    assert result.output.endswith(STUCK_MESSAGE)
    assert result.duration < 20


async def test_disabled_overseer_never_kills(tmp_path: Path) -> None:
    options = RunOptions(
        cwd=tmp_path,
        overseer=OverseerConfig(enabled=False, check_interval=0.1, stuck_threshold=0.1),
        snapshot=_frozen_snapshot,
    )
    result = await ScriptProvider().run("sleep 0.5; echo finished", options)
    assert result.success
    assert STUCK_MESSAGE not in result.output


async def test_abort_before_finish_is_not_success(tmp_path: Path) -> None:
    def on_spawn(process: AgentProcess) -> None:
        process.terminate()

    result = await ScriptProvider().run("sleep 30", RunOptions(cwd=tmp_path, on_spawn=on_spawn))
    assert not result.success


async def test_missing_executable(tmp_path: Path) -> None:
    assert not await MissingProvider().is_available()
    with pytest.raises(ProviderUnavailableError):
        await MissingProvider().run("echo hi", RunOptions(cwd=tmp_path))


async def test_missing_cwd_is_a_failed_run(tmp_path: Path) -> None:
    result = await ScriptProvider().run("echo hi", RunOptions(cwd=tmp_path / "gone"))
    assert not result.success
    assert result.output.startswith("Could not start script:")
