"""Session scheduler: pulls issues and drives one supervised session per issue.

Each dispatch creates a worktree, runs the prompt through the fallback chain
with the watchdogs wired to the spawned agent, then either opens a pull
request or reverts the issue. A failed session never stops the loop
(unless running single-shot).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from lisa.errors import GitOperationError, LisaError
from lisa.events import (
    InMemoryEventBus,
    IssueDone,
    IssueKilled,
    IssueOutput,
    IssueQueued,
    IssueReverted,
    IssueSkipped,
    IssueStarted,
    KillRequested,
    PauseProvider,
    ResumeProvider,
    SkipRequested,
    WorkComplete,
)
from lisa.git.worktree import WorktreeManager, determine_repo_path, generate_branch_name
from lisa.models import Session, SessionState
from lisa.paths import get_guardrails_path, get_logs_dir, get_pr_cache_path, rotate_log_files
from lisa.prompt import build_prompt
from lisa.providers.agents import create_provider
from lisa.providers.base import RunOptions
from lisa.providers.fallback import DEFAULT_POLICY, run_with_fallback
from lisa.session.guardrails import Guardrails
from lisa.session.pr_cache import PrCache
from lisa.session.resources import ResourceRegistry

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from lisa.config import LisaConfig, RepoConfig
    from lisa.events import DomainEvent, EventBus
    from lisa.git.pull_requests import PullRequests
    from lisa.models import FallbackResult, GitSnapshot, Issue, WorktreeHandle
    from lisa.providers.fallback import FallbackPolicy, ProviderLookup
    from lisa.providers.pty import AgentProcess, OutputChunk
    from lisa.sources.base import Source

logger = logging.getLogger(__name__)

IDLE_POLL_INTERVAL = 0.1


@dataclass(slots=True)
class RunningSession:
    """State for a session between dispatch and teardown."""

    session: Session
    issue: Issue
    repo_config: RepoConfig | None = None
    task: asyncio.Task[None] | None = None
    process: AgentProcess | None = None
    handle: WorktreeHandle | None = None
    stop_requested: SessionState | None = None
    untrack: list[Callable[[], None]] = field(default_factory=list)


class Scheduler:
    """Bounded-concurrency loop over issues from one source.

    Modes: continuous (default), single-shot (``once``) and ``dry_run``,
    which only reports what would run. ``limit`` caps the total number of
    sessions; 0 or None means unlimited.
    """

    def __init__(
        self,
        config: LisaConfig,
        source: Source,
        *,
        workspace: Path,
        pull_requests: PullRequests,
        worktrees: WorktreeManager | None = None,
        bus: EventBus | None = None,
        providers: ProviderLookup = create_provider,
        policy: FallbackPolicy = DEFAULT_POLICY,
        snapshot: Callable[[Path], Awaitable[GitSnapshot]] | None = None,
        once: bool = False,
        limit: int | None = None,
        dry_run: bool = False,
        concurrency: int | None = None,
    ) -> None:
        self._config = config
        self._source = source
        self._workspace = workspace
        self._pull_requests = pull_requests
        self._worktrees = worktrees or WorktreeManager()
        self.bus: EventBus = bus or InMemoryEventBus()
        self._providers = providers
        self._policy = policy
        self._snapshot = snapshot
        self._once = once
        self._limit = limit if limit is not None else (config.loop.max_sessions or None)
        self._dry_run = dry_run
        self._concurrency = 1 if once else (concurrency or config.loop.concurrency)

        self._running: dict[str, RunningSession] = {}
        self._claimed: set[tuple[Path, str]] = set()
        self._deferred: set[str] = set()
        self._lifecycle_started: set[Path] = set()
        self._sessions: list[Session] = []
        self._dispatched = 0
        self._stopping = False
        self._wakeup = asyncio.Event()
        self._resources = ResourceRegistry()
        self._guardrails = Guardrails(get_guardrails_path(workspace))
        self._pr_cache = PrCache(get_pr_cache_path(workspace))

    # --- Public API ---

    @property
    def sessions(self) -> list[Session]:
        """Finished sessions, in completion order."""
        return list(self._sessions)

    @property
    def resources(self) -> ResourceRegistry:
        return self._resources

    def is_running(self, issue_id: str) -> bool:
        return issue_id in self._running

    def running_issue_ids(self) -> list[str]:
        return list(self._running)

    def get_session(self, issue_id: str) -> Session | None:
        running = self._running.get(issue_id)
        return running.session if running else None

    def pause_provider(self) -> None:
        """Freeze every overseer's idle clock; agents keep running."""
        self.bus.publish_nowait(PauseProvider())

    def resume_provider(self) -> None:
        self.bus.publish_nowait(ResumeProvider())

    def kill(self, issue_id: str | None = None) -> list[str]:
        """Terminate one running session (or all). Returns the affected ids."""
        return self._request_stop(issue_id, SessionState.KILLED)

    def skip(self, issue_id: str | None = None) -> list[str]:
        """Abandon one running session (or all) and return its issue to the queue."""
        return self._request_stop(issue_id, SessionState.SKIPPED)

    def stop(self) -> None:
        """Stop dispatching and kill running sessions."""
        self._stopping = True
        self.kill()
        self._wakeup.set()

    async def run(self) -> list[Session]:
        """Run until done, stopped or the session limit is hit.

        Returns the finished sessions. All side resources are torn down on
        exit, including on cancellation.
        """
        self.bus.add_handler(self._on_control)
        self._resources.push("control handler", lambda: self.bus.remove_handler(self._on_control))
        semaphore = asyncio.Semaphore(self._concurrency)
        try:
            while not self._stopping and not self._limit_reached():
                await semaphore.acquire()
                if self._stopping or self._limit_reached():
                    semaphore.release()
                    break

                issue = await self._fetch_next_issue()
                if issue is None:
                    semaphore.release()
                    if self._once or self._dry_run:
                        break
                    await self._idle_wait()
                    continue

                if self._dry_run:
                    semaphore.release()
                    self._describe(issue)
                    break

                if not self._dispatch(issue, semaphore):
                    semaphore.release()
                    await self._idle_wait()
                    continue
                if self._once:
                    break

            await self._drain()
        except asyncio.CancelledError:
            self.stop()
            await self._drain()
            raise
        finally:
            await self._resources.aclose()
            succeeded = sum(1 for s in self._sessions if s.state == SessionState.SUCCEEDED)
            self.bus.publish_nowait(WorkComplete(sessions=len(self._sessions), succeeded=succeeded))
        return self.sessions

    # --- Loop internals ---

    def _limit_reached(self) -> bool:
        return self._limit is not None and self._dispatched >= self._limit

    def _is_eligible(self, issue_id: str) -> bool:
        return issue_id not in self._running and issue_id not in self._deferred

    async def _fetch_next_issue(self) -> Issue | None:
        """Next issue that is neither running nor deferred, or None.

        When the head of the queue is taken, the rest of the ready queue is
        walked so one busy or failing issue never blocks those behind it.
        """
        source_config = self._config.source_config
        try:
            issue = await self._source.fetch_next_issue(source_config)
            if issue is None:
                logger.info("No issues with label %r found", ", ".join(source_config.labels))
                return None
            if self._is_eligible(issue.id):
                return issue
            queue = await self._source.list_issues(source_config)
        except Exception:
            logger.exception("Fetching the next issue failed")
            return None
        for candidate in queue:
            if self._is_eligible(candidate.id):
                return candidate
        logger.debug("Every ready issue is running or failed this cycle")
        return None

    async def _idle_wait(self) -> None:
        """Sleep for the cooldown, waking early when a session finishes."""
        cooldown = self._config.loop.cooldown
        self._wakeup.clear()
        if self._stopping:
            return
        if cooldown > 0:
            logger.info("Sleeping %.0fs...", cooldown)
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=cooldown)
        elif self._running:
            await self._wakeup.wait()
        else:
            await asyncio.sleep(IDLE_POLL_INTERVAL)
        # Failed issues become eligible again once a cooldown has passed.
        self._deferred.clear()

    async def _drain(self) -> None:
        tasks = [r.task for r in self._running.values() if r.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _resolve_repo(self, issue: Issue) -> tuple[Path, RepoConfig | None]:
        repos = self._config.repos
        repo_path = determine_repo_path(repos, issue, self._workspace)
        if repo_path is None:
            return self._workspace, None
        for repo in repos:
            if self._workspace / repo.path == repo_path:
                return repo_path, repo
        return repo_path, None

    def _describe(self, issue: Issue) -> None:
        repo_path, repo = self._resolve_repo(issue)
        branch = generate_branch_name(issue.id, issue.title)
        candidates = ", ".join(str(c) for c in self._config.model_candidates())
        logger.info(
            "[dry-run] Would resolve %s (%s) in %s on %s from %s using %s",
            issue.id,
            issue.title,
            repo_path,
            branch,
            repo.base_branch if repo else self._config.base_branch,
            candidates,
        )

    def _dispatch(self, issue: Issue, semaphore: asyncio.Semaphore) -> bool:
        repo_path, repo = self._resolve_repo(issue)
        branch = generate_branch_name(issue.id, issue.title)
        key = (repo_path.resolve(), branch)
        if key in self._claimed:
            logger.warning(
                "Branch %s in %s is already in use, deferring %s", branch, repo_path, issue.id
            )
            return False

        self._dispatched += 1
        session = Session(
            issue_id=issue.id,
            repo_path=repo_path,
            branch_name=branch,
            base_branch=repo.base_branch if repo else self._config.base_branch,
            title=issue.title,
        )
        running = RunningSession(session=session, issue=issue, repo_config=repo)
        # Register before the task starts so kill/skip can always find it.
        self._running[issue.id] = running
        self._claimed.add(key)
        self.bus.publish_nowait(IssueQueued(issue_id=issue.id, title=issue.title))

        task = asyncio.create_task(self._run_session(running, self._dispatched))
        running.task = task
        task.add_done_callback(self._make_done_callback(issue.id, key, semaphore))
        return True

    def _make_done_callback(
        self, issue_id: str, key: tuple[Path, str], semaphore: asyncio.Semaphore
    ) -> Callable[[asyncio.Task[None]], None]:
        """Create task done callback with weak self reference."""
        weak_self = weakref.ref(self)

        def on_done(task: asyncio.Task[None]) -> None:
            semaphore.release()
            scheduler = weak_self()
            if scheduler is not None:
                scheduler._handle_task_done(issue_id, key, task)

        return on_done

    def _handle_task_done(
        self, issue_id: str, key: tuple[Path, str], task: asyncio.Task[None]
    ) -> None:
        running = self._running.pop(issue_id, None)
        self._claimed.discard(key)
        if running is not None:
            self._sessions.append(running.session)
            if running.session.state != SessionState.SUCCEEDED:
                self._deferred.add(issue_id)
        if not task.cancelled() and (exc := task.exception()) is not None:
            logger.error("Session task for %s crashed: %s", issue_id, exc)
        self._wakeup.set()

    def _on_control(self, event: DomainEvent) -> None:
        if isinstance(event, KillRequested):
            self.kill(event.issue_id)
        elif isinstance(event, SkipRequested):
            self.skip(event.issue_id)

    def _request_stop(self, issue_id: str | None, target: SessionState) -> list[str]:
        if issue_id is None:
            targets = list(self._running.values())
        else:
            targets = [r] if (r := self._running.get(issue_id)) is not None else []
        affected: list[str] = []
        for running in targets:
            if running.stop_requested is not None or running.session.is_terminal:
                continue
            running.stop_requested = target
            affected.append(running.session.issue_id)
            logger.info("%s requested for %s", target.value.capitalize(), running.session.issue_id)
            if running.process is not None:
                running.process.terminate()
        return affected

    # --- One session ---

    async def _run_session(self, running: RunningSession, number: int) -> None:
        session = running.session
        issue = running.issue
        logs_dir = get_logs_dir(self._workspace)
        logs_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        session.log_file = logs_dir / f"session_{number}_{stamp}.log"
        rotate_log_files(self._workspace)

        try:
            in_progress = self._config.source_config.in_progress
            await self._source_call("claim", self._source.update_status(issue.id, in_progress))
            try:
                running.handle = await self._prepare_workdir(session)
            except GitOperationError as e:
                logger.error("Could not prepare a worktree for %s: %s", issue.id, e)
                await self._finish_failed(running, f"worktree: {e}", output=str(e), provider="-")
                return

            if running.stop_requested is not None:
                await self._finish_stopped(running)
                return

            try:
                await self._start_lifecycle(running)
            except LisaError as e:
                logger.error("Lifecycle setup failed for %s: %s", issue.id, e)
                await self._finish_failed(running, f"lifecycle: {e}", output=str(e), provider="-")
                return

            result = await self._run_agent(running)
            session.record_attempts(result.attempts)

            if running.stop_requested is not None:
                await self._finish_stopped(running)
            elif result.success:
                await self._finish_succeeded(running, result)
            else:
                reason = str(result.failure) if result.failure else "provider failed"
                await self._finish_failed(
                    running, reason, output=result.output, provider=result.provider_used or "-"
                )
        except asyncio.CancelledError:
            self._finalize(running, SessionState.KILLED)
            raise
        except Exception as e:
            logger.exception("Session for %s crashed", issue.id)
            if not session.is_terminal:
                await self._finish_failed(
                    running, f"internal error: {e}", output=str(e), provider="-"
                )
        finally:
            for untrack in running.untrack:
                untrack()
            await self._teardown(running)

    async def _prepare_workdir(self, session: Session) -> WorktreeHandle:
        if self._config.workflow == "branch":
            return await self._worktrees.checkout_branch(
                session.repo_path, session.branch_name, session.base_branch
            )
        return await self._worktrees.create_worktree(
            session.repo_path, session.branch_name, session.base_branch
        )

    async def _start_lifecycle(self, running: RunningSession) -> None:
        repo = running.repo_config
        if repo is None or repo.lifecycle is None:
            return
        repo_path = running.session.repo_path.resolve()
        if repo_path in self._lifecycle_started:
            return
        await self._resources.start_lifecycle(repo.lifecycle, repo_path)
        self._lifecycle_started.add(repo_path)

    async def _run_agent(self, running: RunningSession) -> FallbackResult:
        session = running.session
        issue = running.issue
        assert running.handle is not None
        workdir = running.handle.worktree_path

        prompt = build_prompt(
            issue,
            workdir=workdir,
            branch_name=session.branch_name,
            base_branch=session.base_branch,
            guardrails=self._guardrails.build_section(),
            pr_url=self._pr_cache.load(issue.id),
        )

        session.transition(SessionState.RUNNING)
        self.bus.publish_nowait(
            IssueStarted(
                issue_id=issue.id,
                branch_name=session.branch_name,
                log_file=str(session.log_file) if session.log_file else None,
            )
        )
        logger.info("Started %s (%s) on %s", issue.id, issue.title, session.branch_name)

        def on_spawn(process: AgentProcess) -> None:
            running.process = process
            running.untrack.append(self._resources.track_process(process))
            if running.stop_requested is not None:
                process.terminate()

        def on_output(chunk: OutputChunk) -> None:
            session.append_output(chunk.text)
            self.bus.publish_nowait(
                IssueOutput(issue_id=issue.id, stream=chunk.stream, text=chunk.text)
            )

        options = RunOptions(
            cwd=workdir,
            log_file=session.log_file,
            overseer=self._config.overseer,
            on_spawn=on_spawn,
            on_output=on_output,
            should_abort=lambda: running.stop_requested is not None or self._stopping,
            control=self.bus,
            snapshot=self._snapshot,
        )
        return await run_with_fallback(
            self._config.model_candidates(),
            prompt,
            options,
            providers=self._providers,
            policy=self._policy,
        )

    async def _resolve_head(self, running: RunningSession) -> str:
        """Branch the agent actually pushed, falling back to the session branch."""
        session = running.session
        handle = running.handle
        if handle is None:
            return session.branch_name
        with contextlib.suppress(GitOperationError):
            current = await self._worktrees.current_branch(handle.worktree_path)
            if current and current not in (session.base_branch, "HEAD"):
                return current
            found = await self._worktrees.find_branch_by_issue_id(
                session.repo_path, session.issue_id
            )
            if found:
                return found
        return session.branch_name

    async def _finish_succeeded(self, running: RunningSession, result: FallbackResult) -> None:
        session = running.session
        issue = running.issue
        source_config = self._config.source_config
        assert running.handle is not None

        head = await self._resolve_head(running)
        try:
            pr = await self._pull_requests.create_pull_request(
                head=head,
                base=session.base_branch,
                title=issue.title,
                body=_pr_body(issue),
                cwd=running.handle.worktree_path,
            )
        except LisaError as e:
            logger.error("Pull request for %s could not be created: %s", issue.id, e)
            await self._finish_failed(
                running,
                f"pull request: {e}",
                output=result.output,
                provider=result.provider_used or "-",
            )
            return

        provider_used = str(result.provider_used)
        if result.model_used:
            provider_used = f"{provider_used}/{result.model_used}"
        try:
            await self._pull_requests.append_attribution(pr.url, provider_used)
        except Exception as e:
            logger.warning("Attribution for %s failed: %s", pr.url, e)

        await self._source_call("attach PR", self._source.attach_pull_request(issue.id, pr.url))
        await self._source_call(
            "complete issue",
            self._source.complete_issue(issue.id, source_config.done, source_config.remove_label),
        )
        self._pr_cache.store(issue.id, pr.url)
        session.pr_url = pr.url

        if self._finalize(running, SessionState.SUCCEEDED):
            self.bus.publish_nowait(
                IssueDone(issue_id=issue.id, pr_url=pr.url, provider_used=result.provider_used)
            )
            logger.info("Resolved %s: %s", issue.id, pr.url)

    async def _finish_failed(
        self, running: RunningSession, reason: str, *, output: str, provider: str
    ) -> None:
        session = running.session
        issue = running.issue
        try:
            self._guardrails.record_failure(issue.id, provider, output or reason)
        except OSError as e:
            logger.warning("Could not record guardrail for %s: %s", issue.id, e)
        await self._source_call(
            "revert status",
            self._source.update_status(issue.id, self._config.source_config.pick_from),
        )
        if self._finalize(running, SessionState.FAILED):
            log_file = str(session.log_file) if session.log_file else None
            self.bus.publish_nowait(
                IssueReverted(issue_id=issue.id, reason=reason, log_file=log_file)
            )
            logger.error("Session for %s failed: %s. Log: %s", issue.id, reason, log_file)

    async def _finish_stopped(self, running: RunningSession) -> None:
        target = running.stop_requested or SessionState.KILLED
        issue_id = running.session.issue_id
        await self._source_call(
            "revert status",
            self._source.update_status(issue_id, self._config.source_config.pick_from),
        )
        if not self._finalize(running, target):
            return
        if target == SessionState.SKIPPED:
            self.bus.publish_nowait(IssueSkipped(issue_id=issue_id))
        else:
            self.bus.publish_nowait(IssueKilled(issue_id=issue_id))

    def _finalize(self, running: RunningSession, target: SessionState) -> bool:
        """Move to a terminal state exactly once."""
        return running.session.try_transition(target)

    async def _teardown(self, running: RunningSession) -> None:
        handle = running.handle
        if handle is None:
            return
        if running.session.state == SessionState.RUNNING:
            # Unreachable in normal flow; never pull a worktree out from under an agent.
            logger.error(
                "Refusing to remove worktree of running session %s", running.session.issue_id
            )
            return
        try:
            if self._config.workflow == "branch":
                await self._worktrees.restore_branch(handle)
            else:
                await self._worktrees.remove_worktree(handle)
        except GitOperationError as e:
            logger.warning("Cleanup of %s failed, left intact: %s", handle.worktree_path, e)

    async def _source_call(self, action: str, call: Awaitable[None]) -> None:
        try:
            await call
        except Exception as e:
            logger.warning("Source %s failed: %s", action, e)


def _pr_body(issue: Issue) -> str:
    lines = [f"Closes {issue.id}"]
    if issue.url:
        lines += ["", issue.url]
    if issue.description:
        lines += ["", "## Issue", "", issue.description.strip()]
    return "\n".join(lines)
