"""Issue source contract."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from lisa.config import SourceConfig
    from lisa.models import Issue


@runtime_checkable
class Source(Protocol):
    """Issue tracker the scheduler pulls work from and reports back to."""

    name: str

    async def fetch_next_issue(self, config: SourceConfig) -> Issue | None:
        """Return the next issue ready to work on, or None."""
        ...

    async def fetch_issue_by_id(self, issue_id: str) -> Issue | None: ...

    async def update_status(self, issue_id: str, status: str) -> None: ...

    async def remove_label(self, issue_id: str, label: str) -> None: ...

    async def attach_pull_request(self, issue_id: str, pr_url: str) -> None: ...

    async def complete_issue(
        self, issue_id: str, status: str, label_to_remove: str | None = None
    ) -> None: ...

    async def list_issues(self, config: SourceConfig) -> list[Issue]:
        """Every issue ready to work on, in the order fetch_next_issue hands them out."""
        ...


class SupportsAddLabel(Protocol):
    """Optional capability: sources that can add labels."""

    async def add_label(self, issue_id: str, label: str) -> None: ...
