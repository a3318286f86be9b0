"""Core session data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from lisa.errors import InvalidSessionTransition, LisaError

if TYPE_CHECKING:
    from pathlib import Path

type IssueId = str
type ProviderName = str
type GitSnapshot = str


class SessionState(StrEnum):
    """Lifecycle of one attempt to resolve one issue."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {SessionState.SUCCEEDED, SessionState.FAILED, SessionState.SKIPPED, SessionState.KILLED}
)
REQUEUEABLE_STATES = frozenset({SessionState.FAILED, SessionState.SKIPPED, SessionState.KILLED})

_ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.QUEUED: frozenset({SessionState.RUNNING, *TERMINAL_STATES}),
    SessionState.RUNNING: TERMINAL_STATES,
}


@dataclass(frozen=True, slots=True)
class Issue:
    """A tracked issue as returned by a source."""

    id: IssueId
    title: str
    description: str = ""
    url: str = ""
    repo: str | None = None


@dataclass(frozen=True, slots=True)
class ModelSpec:
    """One (provider, model) candidate of a fallback chain."""

    provider: ProviderName
    model: str | None = None

    def __str__(self) -> str:
        if self.model:
            return f"{self.provider}/{self.model}"
        return self.provider


@dataclass(frozen=True, slots=True)
class ModelAttempt:
    """Outcome of one candidate; appended in attempt order and never mutated."""

    provider: ProviderName
    model: str | None
    success: bool
    error: str | None
    duration: float


@dataclass(frozen=True, slots=True)
class RunResult:
    """Outcome of one provider run."""

    success: bool
    output: str
    duration: float


@dataclass(frozen=True, slots=True)
class FallbackResult:
    """Outcome of a whole fallback chain."""

    success: bool
    output: str
    duration: float
    provider_used: ProviderName | None
    model_used: str | None = None
    attempts: tuple[ModelAttempt, ...] = ()
    failure: LisaError | None = None
    """Classified reason the chain stopped; None on success."""


@dataclass(frozen=True, slots=True)
class WorktreeHandle:
    """An isolated working tree checked out on a dedicated branch."""

    repo_root: Path
    branch_name: str
    worktree_path: Path
    base_branch: str


@dataclass(slots=True)
class Session:
    """One end-to-end attempt to resolve a tracked issue."""

    issue_id: IssueId
    repo_path: Path
    branch_name: str
    base_branch: str
    state: SessionState = SessionState.QUEUED
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: list[ModelAttempt] = field(default_factory=list)
    pr_url: str | None = None
    output_log: list[str] = field(default_factory=list)
    log_file: Path | None = None
    title: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def transition(self, target: SessionState) -> None:
        """Move to *target*, enforcing monotonic transitions."""
        allowed = _ALLOWED_TRANSITIONS.get(self.state, frozenset())
        if target not in allowed:
            raise InvalidSessionTransition(self.state, target)
        self.state = target
        if target == SessionState.RUNNING:
            self.started_at = datetime.now()
        elif target.is_terminal:
            self.finished_at = datetime.now()

    def try_transition(self, target: SessionState) -> bool:
        """Transition if allowed; return False instead of raising."""
        try:
            self.transition(target)
        except InvalidSessionTransition:
            return False
        return True

    def record_attempts(self, attempts: tuple[ModelAttempt, ...] | list[ModelAttempt]) -> None:
        self.attempts.extend(attempts)

    def append_output(self, text: str) -> None:
        if text:
            self.output_log.append(text)

    @property
    def output(self) -> str:
        return "".join(self.output_log)

    def requeue(self) -> Session:
        """Return a fresh queued session for a failed, skipped or killed one."""
        if self.state not in REQUEUEABLE_STATES:
            raise InvalidSessionTransition(self.state, SessionState.QUEUED)
        return Session(
            issue_id=self.issue_id,
            repo_path=self.repo_path,
            branch_name=self.branch_name,
            base_branch=self.base_branch,
            title=self.title,
        )


__all__ = [
    "REQUEUEABLE_STATES",
    "TERMINAL_STATES",
    "FallbackResult",
    "GitSnapshot",
    "Issue",
    "IssueId",
    "ModelAttempt",
    "ModelSpec",
    "ProviderName",
    "RunResult",
    "Session",
    "SessionState",
    "WorktreeHandle",
]
