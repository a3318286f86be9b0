"""Build the implementation prompt handed to a provider."""

from __future__ import annotations

from functools import cache
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lisa.models import Issue

TEMPLATE_PATH = Path(__file__).parent / "prompts" / "implement.md"


@cache
def _load_template() -> str:
    return TEMPLATE_PATH.read_text(encoding="utf-8")


def build_pr_feedback_section(pr_url: str | None) -> str:
    if not pr_url:
        return ""
    return (
        "\n## Previous pull request\n\n"
        f"A pull request for this issue already exists: {pr_url}\n"
        "Read its review comments (`gh pr view --comments`) and address them.\n"
    )


def build_prompt(
    issue: Issue,
    *,
    workdir: Path,
    branch_name: str,
    base_branch: str,
    guardrails: str = "",
    pr_url: str | None = None,
) -> str:
    """Render the implementation prompt for one session.

    Args:
        issue: The issue to resolve.
        workdir: Worktree (or repository) the agent runs in.
        branch_name: Branch already checked out in *workdir*.
        base_branch: Branch the work will be merged into.
        guardrails: Rendered guardrails section, may be empty.
        pr_url: URL of an earlier pull request for this issue, if any.
    """
    return _load_template().format(
        issue_id=issue.id,
        title=issue.title,
        url_line=f"Source: {issue.url}\n" if issue.url else "",
        description=issue.description.strip() or "(no description)",
        pr_feedback=build_pr_feedback_section(pr_url),
        workdir=workdir,
        branch_name=branch_name,
        base_branch=base_branch,
        guardrails=guardrails,
    )
