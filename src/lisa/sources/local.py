"""Local issue source: markdown files under ``.lisa/issues``.

Each ``<slug>.md`` file is one issue. An optional ``---`` frontmatter block
carries ``repo:`` (and ``title:``); otherwise the title is derived from the
kebab-case file name. Completed issues move to ``.lisa/issues/done``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING

from lisa.models import Issue

if TYPE_CHECKING:
    from lisa.config import SourceConfig

logger = logging.getLogger(__name__)

ISSUES_DIR = Path(".lisa") / "issues"
DONE_DIR_NAME = "done"

_FRONTMATTER = re.compile(r"^---\r?\n(.*?)\r?\n---\r?\n?(.*)$", re.DOTALL)


def parse_frontmatter(raw: str) -> tuple[dict[str, str], str]:
    """Split ``key: value`` frontmatter from the body."""
    match = _FRONTMATTER.match(raw)
    if not match:
        return {}, raw
    meta: dict[str, str] = {}
    for line in match.group(1).splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip():
            meta[key.strip()] = value.strip()
    return meta, match.group(2)


def kebab_to_title(slug: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in slug.split("-") if word)


class LocalSource:
    """Issues kept as files in the workspace.

    Status changes other than completion are tracked in memory, so an issue
    in progress is not handed out twice within one run.
    """

    name = "local"

    def __init__(self, workspace: Path) -> None:
        self.issues_dir = workspace / ISSUES_DIR
        self.done_dir = self.issues_dir / DONE_DIR_NAME
        self._statuses: dict[str, str] = {}
        self._pull_requests: dict[str, str] = {}

    def _path(self, issue_id: str) -> Path:
        return self.issues_dir / f"{issue_id}.md"

    def _load(self, path: Path) -> Issue:
        meta, body = parse_frontmatter(path.read_text(encoding="utf-8"))
        return Issue(
            id=path.stem,
            title=meta.get("title") or kebab_to_title(path.stem),
            description=body.strip(),
            url=str(path),
            repo=meta.get("repo") or None,
        )

    def _files(self) -> list[Path]:
        if not self.issues_dir.is_dir():
            return []
        return sorted(p for p in self.issues_dir.glob("*.md") if p.is_file())

    async def list_issues(self, config: SourceConfig) -> list[Issue]:
        return [
            self._load(path)
            for path in self._files()
            if self._statuses.get(path.stem, config.pick_from) == config.pick_from
        ]

    async def fetch_next_issue(self, config: SourceConfig) -> Issue | None:
        issues = await self.list_issues(config)
        return issues[0] if issues else None

    async def fetch_issue_by_id(self, issue_id: str) -> Issue | None:
        path = self._path(issue_id)
        return self._load(path) if path.is_file() else None

    def status(self, issue_id: str) -> str | None:
        return self._statuses.get(issue_id)

    async def update_status(self, issue_id: str, status: str) -> None:
        self._statuses[issue_id] = status

    async def remove_label(self, issue_id: str, label: str) -> None:
        """Local issues have no labels."""

    async def attach_pull_request(self, issue_id: str, pr_url: str) -> None:
        self._pull_requests[issue_id] = pr_url

    async def complete_issue(
        self, issue_id: str, status: str, label_to_remove: str | None = None
    ) -> None:
        self._statuses[issue_id] = status
        src = self._path(issue_id)
        if not src.exists():
            return
        self.done_dir.mkdir(parents=True, exist_ok=True)
        src.rename(self.done_dir / src.name)
        logger.info("Moved %s to %s", src.name, self.done_dir)
