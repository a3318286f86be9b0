"""Git worktree management for isolated issue sessions.

Every session works in ``<repo>/.worktrees/<branch>`` on a fresh branch cut
from ``origin/<base>``. The ``.worktrees`` directory belongs to this module:
anything found there that no running session owns is an orphan left by a
crashed run.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from lisa.errors import GitOperationError
from lisa.limits import NETWORK_TIMEOUT
from lisa.models import WorktreeHandle
from lisa.paths import WORKTREES_DIR_NAME, get_worktrees_dir

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from lisa.config import RepoConfig
    from lisa.models import Issue

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "feat/"
SLUG_MAX_LEN = 40


def slugify(text: str, max_len: int = SLUG_MAX_LEN) -> str:
    """Convert text to a branch-safe slug.

    Examples:
        "Fix login bug" -> "fix-login-bug"
        "[API] Add /users endpoint!" -> "api-add-users-endpoint"
    """
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    if len(slug) > max_len:
        slug = slug[:max_len].rstrip("-")
    return slug


def generate_branch_name(issue_id: str, title: str) -> str:
    """Deterministic ``feat/<issue-id>-<slug>`` branch name for an issue."""
    ident = re.sub(r"[^a-z0-9]+", "-", issue_id.lower()).strip("-") or "issue"
    slug = slugify(title)
    if slug:
        return f"{BRANCH_PREFIX}{ident}-{slug}"
    return f"{BRANCH_PREFIX}{ident}"


@dataclass(frozen=True, slots=True)
class WorktreeEntry:
    """One line-group of ``git worktree list --porcelain``."""

    path: Path
    branch: str | None
    head: str | None = None


@dataclass(frozen=True, slots=True)
class FeatureBranch:
    """A branch an agent left behind in one repository."""

    repo_path: Path
    branch: str


def determine_repo_path(
    repos: Sequence[RepoConfig], issue: Issue, workspace: Path
) -> Path | None:
    """Pick the repository an issue targets.

    Explicit ``issue.repo`` name first, then a configured title prefix, then
    the first configured repo. None when no repos are configured.
    """
    if not repos:
        return None
    if issue.repo:
        for repo in repos:
            if repo.name == issue.repo:
                return workspace / repo.path
    for repo in repos:
        if repo.match and issue.title.startswith(repo.match):
            return workspace / repo.path
    return workspace / repos[0].path


def ensure_worktree_gitignore(repo_root: Path) -> bool:
    """Make sure ``.worktrees`` is ignored. Returns True if the file changed."""
    gitignore = repo_root / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text(f"{WORKTREES_DIR_NAME}\n", encoding="utf-8")
        return True
    content = gitignore.read_text(encoding="utf-8")
    ignored = (WORKTREES_DIR_NAME, f"{WORKTREES_DIR_NAME}/")
    if any(line.strip() in ignored for line in content.splitlines()):
        return False
    separator = "" if not content or content.endswith("\n") else "\n"
    with gitignore.open("a", encoding="utf-8") as f:
        f.write(f"{separator}{WORKTREES_DIR_NAME}\n")
    return True


async def run_git(
    *args: str,
    cwd: Path,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[int, str, str]:
    """Run a git command and return ``(returncode, stdout, stderr)``.

    Raises:
        GitOperationError: If git cannot be started, times out, or (with
            ``check``) exits non-zero.
    """
    command = ("git", *args)
    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            cwd=cwd,
        )
    except OSError as e:
        raise GitOperationError(command, detail=str(e)) from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as e:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        await proc.wait()
        raise GitOperationError(command, detail=f"timed out after {timeout:.0f}s") from e

    returncode = proc.returncode if proc.returncode is not None else -1
    stdout_str = stdout.decode(errors="replace").strip()
    stderr_str = stderr.decode(errors="replace").strip()
    if check and returncode != 0:
        raise GitOperationError(command, returncode=returncode, stderr=stderr_str)
    return returncode, stdout_str, stderr_str


def _parse_worktree_list(output: str) -> list[WorktreeEntry]:
    entries: list[WorktreeEntry] = []
    path: Path | None = None
    branch: str | None = None
    head: str | None = None
    for line in [*output.splitlines(), ""]:
        if not line.strip():
            if path is not None:
                entries.append(WorktreeEntry(path=path, branch=branch, head=head))
            path, branch, head = None, None, None
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            path = Path(value)
        elif key == "branch":
            branch = value.removeprefix("refs/heads/")
        elif key == "HEAD":
            head = value
    return entries


def _matches(branches: Iterable[str], needle: str) -> str | None:
    for branch in branches:
        if needle in branch.lower():
            return branch
    return None


class WorktreeManager:
    """Creates and destroys per-session worktrees.

    Mutating git operations are serialized per repository; concurrent
    ``git worktree add`` and ``git fetch`` calls in one repo contend on the
    same ref and index locks.
    """

    def __init__(self, *, network_timeout: float = NETWORK_TIMEOUT) -> None:
        self._network_timeout = network_timeout
        self._locks: dict[Path, asyncio.Lock] = {}

    def _lock(self, repo_root: Path) -> asyncio.Lock:
        key = repo_root.resolve()
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def worktree_path(self, repo_root: Path, branch_name: str) -> Path:
        return get_worktrees_dir(repo_root) / branch_name

    async def create_worktree(
        self, repo_root: Path, branch_name: str, base_branch: str
    ) -> WorktreeHandle:
        """Create a fresh worktree on a new branch from ``origin/<base_branch>``.

        Any worktree or local branch with the same name is removed first, so
        calling this twice leaves exactly one worktree.

        Raises:
            GitOperationError: If any git subcommand fails.
        """
        worktree_path = self.worktree_path(repo_root, branch_name)
        async with self._lock(repo_root):
            await self._remove_existing(repo_root, branch_name, worktree_path)
            ensure_worktree_gitignore(repo_root)
            worktree_path.parent.mkdir(parents=True, exist_ok=True)
            await run_git(
                "fetch", "origin", base_branch, cwd=repo_root, timeout=self._network_timeout
            )
            await run_git(
                "worktree",
                "add",
                "-b",
                branch_name,
                str(worktree_path),
                f"origin/{base_branch}",
                cwd=repo_root,
            )
        logger.info("Created worktree %s on %s", worktree_path, branch_name)
        return WorktreeHandle(
            repo_root=repo_root,
            branch_name=branch_name,
            worktree_path=worktree_path,
            base_branch=base_branch,
        )

    async def _remove_existing(
        self, repo_root: Path, branch_name: str, worktree_path: Path
    ) -> None:
        resolved = worktree_path.resolve()
        for entry in await self.list_worktrees(repo_root):
            if entry.branch == branch_name or entry.path.resolve() == resolved:
                logger.info("Removing stale worktree %s (%s)", entry.path, entry.branch)
                await self._force_remove(repo_root, entry.path)
        if worktree_path.exists():
            shutil.rmtree(worktree_path, ignore_errors=True)
        await run_git("worktree", "prune", cwd=repo_root)
        if await self.branch_exists(repo_root, branch_name):
            await run_git("branch", "-D", branch_name, cwd=repo_root)

    async def _force_remove(self, repo_root: Path, worktree_path: Path) -> None:
        if worktree_path.exists():
            returncode, _, stderr = await run_git(
                "worktree", "remove", "--force", str(worktree_path), cwd=repo_root, check=False
            )
            if returncode != 0:
                logger.debug("git worktree remove failed (%s), deleting directory", stderr)
                shutil.rmtree(worktree_path, ignore_errors=True)

    async def remove_worktree(self, handle: WorktreeHandle, *, delete_branch: bool = False) -> None:
        """Force-remove a worktree and prune its metadata.

        Works when the directory was already deleted externally.

        Raises:
            GitOperationError: If pruning fails.
        """
        async with self._lock(handle.repo_root):
            await self._force_remove(handle.repo_root, handle.worktree_path)
            await run_git("worktree", "prune", cwd=handle.repo_root)
            if delete_branch and await self.branch_exists(handle.repo_root, handle.branch_name):
                await run_git("branch", "-D", handle.branch_name, cwd=handle.repo_root)
        logger.info("Removed worktree %s", handle.worktree_path)

    async def checkout_branch(
        self, repo_root: Path, branch_name: str, base_branch: str
    ) -> WorktreeHandle:
        """Check out a fresh branch in the repository itself (``branch`` workflow).

        The returned handle points at the repo root; ``restore_branch`` puts
        the base branch back.
        """
        async with self._lock(repo_root):
            await run_git(
                "fetch", "origin", base_branch, cwd=repo_root, timeout=self._network_timeout
            )
            await run_git("checkout", "-B", branch_name, f"origin/{base_branch}", cwd=repo_root)
        return WorktreeHandle(
            repo_root=repo_root,
            branch_name=branch_name,
            worktree_path=repo_root,
            base_branch=base_branch,
        )

    async def restore_branch(self, handle: WorktreeHandle) -> None:
        async with self._lock(handle.repo_root):
            await run_git("checkout", "--force", handle.base_branch, cwd=handle.repo_root)

    async def list_worktrees(self, repo_root: Path) -> list[WorktreeEntry]:
        _, stdout, _ = await run_git("worktree", "list", "--porcelain", cwd=repo_root)
        return _parse_worktree_list(stdout)

    async def list_orphan_worktrees(
        self, repo_root: Path, active_branches: Iterable[str] = ()
    ) -> list[WorktreeEntry]:
        """Worktrees under ``.worktrees`` that no running session owns."""
        worktrees_dir = get_worktrees_dir(repo_root).resolve()
        active = set(active_branches)
        return [
            entry
            for entry in await self.list_worktrees(repo_root)
            if entry.path.resolve().is_relative_to(worktrees_dir) and entry.branch not in active
        ]

    async def cleanup_orphans(
        self, repo_root: Path, active_branches: Iterable[str] = ()
    ) -> list[Path]:
        """Remove orphan worktrees. Returns the removed paths."""
        orphans = await self.list_orphan_worktrees(repo_root, active_branches)
        removed: list[Path] = []
        async with self._lock(repo_root):
            for entry in orphans:
                await self._force_remove(repo_root, entry.path)
                removed.append(entry.path)
            await run_git("worktree", "prune", cwd=repo_root)
        if removed:
            logger.info("Removed %d orphan worktree(s) in %s", len(removed), repo_root)
        return removed

    async def branch_exists(self, repo_root: Path, branch_name: str) -> bool:
        returncode, _, _ = await run_git(
            "show-ref",
            "--verify",
            "--quiet",
            f"refs/heads/{branch_name}",
            cwd=repo_root,
            check=False,
        )
        return returncode == 0

    async def current_branch(self, repo_root: Path) -> str:
        _, stdout, _ = await run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo_root)
        return stdout

    async def get_default_branch(self, repo_root: Path) -> str:
        """Branch ``origin/HEAD`` points to, ``main`` when unknown."""
        returncode, stdout, _ = await run_git(
            "symbolic-ref", "refs/remotes/origin/HEAD", "--short", cwd=repo_root, check=False
        )
        if returncode != 0 or not stdout:
            return "main"
        return stdout.removeprefix("origin/")

    async def _refs(self, repo_root: Path, namespace: str) -> list[str]:
        _, stdout, _ = await run_git(
            "for-each-ref",
            "--sort=-committerdate",
            "--format=%(refname:short)",
            namespace,
            cwd=repo_root,
        )
        return [line.strip() for line in stdout.splitlines() if line.strip()]

    async def list_local_branches(self, repo_root: Path) -> list[str]:
        """Local branches, most recent commit first."""
        return await self._refs(repo_root, "refs/heads/")

    async def find_branch_by_issue_id(self, repo_root: Path, issue_id: str) -> str | None:
        """Find a branch whose name contains the issue id (case-insensitive).

        Local branches first, then remote-tracking refs, then a live
        ``ls-remote`` in case the local refs are stale.
        """
        needle = issue_id.lower()
        if match := _matches(await self.list_local_branches(repo_root), needle):
            return match

        remote = await self._refs(repo_root, "refs/remotes/origin/")
        if match := _matches(remote, needle):
            return match.removeprefix("origin/")

        returncode, stdout, stderr = await run_git(
            "ls-remote",
            "--heads",
            "origin",
            cwd=repo_root,
            check=False,
            timeout=self._network_timeout,
        )
        if returncode != 0:
            logger.debug("ls-remote failed in %s: %s", repo_root, stderr)
            return None
        heads = [
            line.split("\t", 1)[1].removeprefix("refs/heads/")
            for line in stdout.splitlines()
            if "\t" in line
        ]
        return _matches(heads, needle)

    async def detect_feature_branches(
        self,
        repos: Sequence[RepoConfig],
        issue_id: str,
        workspace: Path,
        base_branch: str,
    ) -> list[FeatureBranch]:
        """Find the branch the agent worked on, per repository.

        Checked in order for each configured repo (or the workspace root):
        the current branch names the issue; the current branch differs from
        the repo's base branch; any local branch names the issue.
        """
        targets = [(workspace / repo.path, repo.base_branch) for repo in repos] or [
            (workspace, base_branch)
        ]
        needle = issue_id.lower()
        found: list[FeatureBranch] = []
        for repo_path, repo_base in targets:
            try:
                current = await self.current_branch(repo_path)
                if needle in current.lower():
                    found.append(FeatureBranch(repo_path, current))
                    continue
                if current and current not in (repo_base, "HEAD"):
                    found.append(FeatureBranch(repo_path, current))
                    continue
                if match := _matches(await self.list_local_branches(repo_path), needle):
                    found.append(FeatureBranch(repo_path, match))
            except GitOperationError as e:
                logger.warning("Branch detection failed in %s: %s", repo_path, e)
        return found
