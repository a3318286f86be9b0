"""Error taxonomy for session orchestration.

Git failures are fatal to one session's worktree step but never to the
scheduler. Provider failures are split into retryable (the fallback chain
advances to the next candidate) and non-retryable (the chain stops).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from lisa.models import SessionState


class LisaError(Exception):
    """Base class for all lisa errors."""


class ConfigError(LisaError):
    """Raised when the configuration file cannot be parsed or validated."""


class InstanceLockedError(LisaError):
    """Raised when another scheduler already owns the workspace."""


class GitOperationError(LisaError):
    """A git subcommand exited non-zero or could not be started."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        returncode: int | None = None,
        stderr: str = "",
        detail: str | None = None,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        parts = [" ".join(self.command)]
        if self.returncode is not None:
            parts.append(f"(rc={self.returncode})")
        message = " ".join(parts)
        detail = self.detail or self.stderr
        if detail:
            return f"{message}: {detail}"
        return message


class ProviderUnavailableError(LisaError):
    """The provider CLI is not installed or not on PATH."""

    def __init__(self, provider: str, detail: str | None = None) -> None:
        self.provider = provider
        message = f"{provider} is not installed or not in PATH"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class RetryableRunError(LisaError):
    """A run failed for a transient reason; another candidate may succeed."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


class NonRetryableRunError(LisaError):
    """A run failed for a logical reason; retrying elsewhere will not help."""


class SupervisionTimeout(RetryableRunError):
    """The overseer killed a provider that stopped changing the working tree."""

    def __init__(self, message: str = "no git changes within the stuck threshold") -> None:
        super().__init__("stuck", message)


class ErrorLoopTimeout(RetryableRunError):
    """The error-loop detector killed a provider that kept emitting errors."""

    def __init__(self, message: str = "consecutive error lines reached the threshold") -> None:
        super().__init__("error_loop", message)


class InvalidSessionTransition(LisaError):
    """Raised when a session is moved backwards or out of a terminal state."""

    def __init__(self, current: SessionState, target: SessionState) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition session from {current.value} to {target.value}")
