"""End-to-end scheduler tests with real git worktrees and in-memory collaborators."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from lisa.config import LisaConfig, LoopConfig, OverseerConfig
from lisa.events import (
    DomainEvent,
    InMemoryEventBus,
    IssueDone,
    IssueKilled,
    IssueQueued,
    IssueReverted,
    IssueSkipped,
    IssueStarted,
    PauseProvider,
    ResumeProvider,
    SkipRequested,
    WorkComplete,
)
from lisa.git.worktree import WorktreeManager
from lisa.models import SessionState
from lisa.paths import get_guardrails_path, get_pr_cache_path
from lisa.session.pr_cache import PrCache
from lisa.session.scheduler import Scheduler
from tests.helpers import FakeProvider, FakePullRequests, FakeSource, failed, ok
from tests.helpers.git import git

if TYPE_CHECKING:
    from collections.abc import Callable

    from lisa.config import SourceConfig
    from lisa.models import Issue

pytestmark = pytest.mark.integration

SCHEDULER_TIMEOUT = 30


def _config(**overrides: object) -> LisaConfig:
    base: dict[str, object] = {
        "loop": LoopConfig(cooldown=0),
        "overseer": OverseerConfig(enabled=False),
    }
    base.update(overrides)
    return LisaConfig(**base)


class Harness:
    """Wires a scheduler to fakes and records every published event."""

    def __init__(
        self,
        workspace: Path,
        *,
        provider: FakeProvider | None = None,
        source: FakeSource | None = None,
        config: LisaConfig | None = None,
        **scheduler_kwargs: object,
    ) -> None:
        self.workspace = workspace
        self.source = source or FakeSource()
        self.pull_requests = FakePullRequests()
        self.provider = provider or FakeProvider("claude")
        self.bus = InMemoryEventBus()
        self.events: list[DomainEvent] = []
        self.bus.add_handler(self.events.append)
        self.scheduler = Scheduler(
            config or _config(),
            self.source,
            workspace=workspace,
            pull_requests=self.pull_requests,
            bus=self.bus,
            providers={"claude": self.provider},
            **scheduler_kwargs,
        )

    async def run(self) -> list:
        return await asyncio.wait_for(self.scheduler.run(), timeout=SCHEDULER_TIMEOUT)

    def of_type[E](self, event_type: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]


async def _until(predicate: Callable[[], bool]) -> None:
    async with asyncio.timeout(SCHEDULER_TIMEOUT):
        while not predicate():
            await asyncio.sleep(0.01)


class StoppingSource(FakeSource):
    """Source that stops the scheduler while it is being asked for work."""

    scheduler: Scheduler | None = None

    async def fetch_next_issue(self, config: SourceConfig) -> Issue | None:
        assert self.scheduler is not None
        self.scheduler.stop()
        return None


async def _linked_worktrees(repo: Path) -> list[Path]:
    main = repo.resolve()
    entries = await WorktreeManager().list_worktrees(repo)
    return [e.path for e in entries if e.path.resolve() != main]


async def test_resolves_issue_end_to_end(git_repo: Path) -> None:
    provider = FakeProvider("claude", chunks=["editing files\n"])
    harness = Harness(git_repo, provider=provider, once=True)
    harness.source.add("INT-100", "Add health endpoint", "Expose GET /health.")

    sessions = await harness.run()

    assert len(sessions) == 1
    session = sessions[0]
    assert session.state == SessionState.SUCCEEDED
    assert session.pr_url == "https://github.com/acme/app/pull/1"
    assert [a.provider for a in session.attempts] == ["claude"]
    assert "editing files" in session.output

    [pr] = harness.pull_requests.created
    assert "int-100" in str(pr["head"])
    assert pr["base"] == "main"
    assert pr["title"] == "Add health endpoint"
    assert str(pr["body"]).startswith("Closes INT-100")
    assert harness.pull_requests.attributions == [(session.pr_url, "claude")]

    assert harness.source.attached == {"INT-100": session.pr_url}
    assert harness.source.completed == [("INT-100", "Done", None)]
    assert harness.source.status_history[0] == ("INT-100", "In Progress")

    [cwd] = harness.provider.cwds
    assert ".worktrees" in cwd.parts
    assert not cwd.exists()
    assert await _linked_worktrees(git_repo) == []

    assert PrCache(get_pr_cache_path(git_repo)).load("INT-100") == session.pr_url
    assert session.log_file is not None
    assert session.log_file.name.startswith("session_1_")

    kinds = [type(e) for e in harness.events]
    assert kinds[0] is IssueQueued
    assert IssueStarted in kinds
    assert kinds.index(IssueDone) < kinds.index(WorkComplete)
    [complete] = harness.of_type(WorkComplete)
    assert (complete.sessions, complete.succeeded) == (1, 1)


async def test_prompt_is_built_for_the_worktree(git_repo: Path) -> None:
    harness = Harness(git_repo, once=True)
    harness.source.add("INT-101", "Fix login redirect", "Users land on /404 after login.")

    await harness.run()

    [(prompt, model)] = harness.provider.calls
    assert "INT-101" in prompt
    assert "Users land on /404 after login." in prompt
    assert "feat/int-101-fix-login-redirect" in prompt
    assert model is None


async def test_failed_run_reverts_issue(git_repo: Path) -> None:
    provider = FakeProvider("claude", results=[failed("Error: tests failed in test_auth.py")])
    harness = Harness(git_repo, provider=provider, once=True)
    harness.source.add("INT-102", "Broken feature")

    [session] = await harness.run()

    assert session.state == SessionState.FAILED
    assert harness.pull_requests.created == []
    assert harness.source.statuses["INT-102"] == "Todo"
    assert harness.source.completed == []

    [reverted] = harness.of_type(IssueReverted)
    assert reverted.issue_id == "INT-102"
    assert reverted.log_file == str(session.log_file)

    guardrails = get_guardrails_path(git_repo).read_text()
    assert "INT-102" in guardrails
    assert "tests failed" in guardrails
    assert await _linked_worktrees(git_repo) == []


async def test_failed_issue_retried_after_cooldown(git_repo: Path) -> None:
    provider = FakeProvider("claude", results=[failed("Error: flaky"), ok()])
    harness = Harness(git_repo, provider=provider, limit=2)
    harness.source.add("INT-103", "Flaky")

    sessions = await harness.run()

    assert [s.state for s in sessions] == [SessionState.FAILED, SessionState.SUCCEEDED]
    assert len(provider.calls) == 2
    # The second attempt sees the first failure as a guardrail.
    assert "Error: flaky" in provider.calls[1][0]


async def test_pull_request_failure_fails_session(git_repo: Path) -> None:
    harness = Harness(git_repo, once=True)
    harness.pull_requests.fail = True
    harness.source.add("INT-104", "No diff")

    [session] = await harness.run()

    assert session.state == SessionState.FAILED
    assert session.pr_url is None
    assert harness.source.statuses["INT-104"] == "Todo"
    assert harness.of_type(IssueDone) == []


async def test_kill_running_session(git_repo: Path) -> None:
    provider = FakeProvider("claude", block=True)
    harness = Harness(git_repo, provider=provider, once=True)
    harness.source.add("INT-105", "Never finishes")

    run = asyncio.create_task(harness.run())
    await asyncio.wait_for(provider.spawned.wait(), timeout=SCHEDULER_TIMEOUT)
    assert harness.scheduler.is_running("INT-105")

    assert harness.scheduler.kill("INT-105") == ["INT-105"]
    assert harness.scheduler.kill("INT-105") == []
    [session] = await run

    assert session.state == SessionState.KILLED
    assert provider.process is not None
    assert provider.process.terminate_calls == 1
    assert len(harness.of_type(IssueKilled)) == 1
    assert harness.source.statuses["INT-105"] == "Todo"
    assert await _linked_worktrees(git_repo) == []


async def test_skip_through_event_bus(git_repo: Path) -> None:
    provider = FakeProvider("claude", block=True)
    harness = Harness(git_repo, provider=provider, once=True)
    harness.source.add("INT-106", "Skip me")

    run = asyncio.create_task(harness.run())
    await asyncio.wait_for(provider.spawned.wait(), timeout=SCHEDULER_TIMEOUT)
    harness.bus.publish_nowait(SkipRequested(issue_id="INT-106"))
    [session] = await run

    assert session.state == SessionState.SKIPPED
    assert [e.issue_id for e in harness.of_type(IssueSkipped)] == ["INT-106"]
    assert harness.of_type(IssueKilled) == []
    assert harness.bus.handler_count == 1


async def test_stop_kills_and_exits_continuous_loop(git_repo: Path) -> None:
    provider = FakeProvider("claude", block=True)
    harness = Harness(git_repo, provider=provider)
    harness.source.add("INT-107", "Long running")

    run = asyncio.create_task(harness.run())
    await asyncio.wait_for(provider.spawned.wait(), timeout=SCHEDULER_TIMEOUT)
    harness.scheduler.stop()
    [session] = await run

    assert session.state == SessionState.KILLED
    assert not harness.scheduler.running_issue_ids()


async def test_pause_and_resume_reach_the_bus(tmp_path: Path) -> None:
    harness = Harness(tmp_path, once=True)
    harness.scheduler.pause_provider()
    harness.scheduler.resume_provider()
    assert [type(e) for e in harness.events] == [PauseProvider, ResumeProvider]


async def test_once_without_issues(git_repo: Path) -> None:
    harness = Harness(git_repo, once=True)

    assert await harness.run() == []
    assert harness.provider.calls == []
    [complete] = harness.of_type(WorkComplete)
    assert complete.sessions == 0


async def test_dry_run_touches_nothing(git_repo: Path) -> None:
    harness = Harness(git_repo, dry_run=True)
    harness.source.add("INT-108", "Preview only")

    assert await harness.run() == []
    assert harness.provider.calls == []
    assert harness.source.status_history == []
    assert await _linked_worktrees(git_repo) == []


async def test_limit_caps_sessions(git_repo: Path) -> None:
    harness = Harness(git_repo, limit=2)
    for n in range(3):
        harness.source.add(f"INT-11{n}", f"Task {n}")

    sessions = await harness.run()

    assert [s.issue_id for s in sessions] == ["INT-110", "INT-111"]
    assert all(s.state == SessionState.SUCCEEDED for s in sessions)
    assert len(harness.pull_requests.created) == 2


async def test_branch_workflow_uses_repository_checkout(git_repo: Path) -> None:
    harness = Harness(git_repo, config=_config(workflow="branch"), once=True)
    harness.source.add("INT-112", "In place")

    [session] = await harness.run()

    assert session.state == SessionState.SUCCEEDED
    assert harness.provider.cwds == [git_repo]
    assert await git(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "main"


async def test_worktree_failure_fails_session(tmp_path: Path) -> None:
    workspace = tmp_path / "not-a-repo"
    workspace.mkdir()
    harness = Harness(workspace, once=True)
    harness.source.add("INT-113", "Nowhere to work")

    [session] = await harness.run()

    assert session.state == SessionState.FAILED
    assert harness.provider.calls == []
    [reverted] = harness.of_type(IssueReverted)
    assert reverted.reason.startswith("worktree:")


async def test_runs_sessions_concurrently_up_to_the_limit(git_repo: Path) -> None:
    provider = FakeProvider("claude", block=True)
    harness = Harness(git_repo, provider=provider, concurrency=2)
    for n in range(3):
        harness.source.add(f"INT-12{n}", f"Parallel {n}")

    run = asyncio.create_task(harness.run())
    await _until(lambda: len(provider.calls) == 2)
    await asyncio.sleep(0.3)

    assert sorted(harness.scheduler.running_issue_ids()) == ["INT-120", "INT-121"]
    assert len(provider.calls) == 2
    assert provider.peak == 2

    harness.scheduler.stop()
    sessions = await run

    assert sorted(s.issue_id for s in sessions) == ["INT-120", "INT-121"]
    assert all(s.state == SessionState.KILLED for s in sessions)
    assert provider.peak == 2


async def test_failing_issue_does_not_block_the_queue(git_repo: Path) -> None:
    provider = FakeProvider("claude", fail_when="always-broken")
    harness = Harness(git_repo, provider=provider, limit=3)
    harness.source.add("INT-201", "Always broken")
    harness.source.add("INT-202", "Works fine")

    sessions = await harness.run()

    assert [(s.issue_id, s.state) for s in sessions] == [
        ("INT-201", SessionState.FAILED),
        ("INT-202", SessionState.SUCCEEDED),
        ("INT-201", SessionState.FAILED),
    ]
    assert harness.source.completed == [("INT-202", "Done", None)]


async def test_stop_during_fetch_skips_the_cooldown(tmp_path: Path) -> None:
    source = StoppingSource()
    harness = Harness(tmp_path, source=source, config=_config(loop=LoopConfig(cooldown=60)))
    source.scheduler = harness.scheduler

    sessions = await asyncio.wait_for(harness.scheduler.run(), timeout=5)

    assert sessions == []
    assert harness.of_type(WorkComplete)
