"""Tests for branch naming and repository resolution."""

from __future__ import annotations

import re
from pathlib import Path

import pytest
from hypothesis import given

from lisa.config import RepoConfig
from lisa.git.worktree import (
    BRANCH_PREFIX,
    determine_repo_path,
    ensure_worktree_gitignore,
    generate_branch_name,
    slugify,
)
from lisa.models import Issue
from tests.strategies import issue_ids, titles

pytestmark = pytest.mark.unit

_BRANCH_CHARS = re.compile(r"^[a-z0-9/-]+$")


class TestGenerateBranchName:
    def test_example(self) -> None:
        assert generate_branch_name("INT-100", "Fix login bug") == "feat/int-100-fix-login-bug"

    def test_punctuation_collapses(self) -> None:
        name = generate_branch_name("ENG-7", "[API] Add /users endpoint!")
        assert name == "feat/eng-7-api-add-users-endpoint"

    def test_empty_title_uses_id_only(self) -> None:
        assert generate_branch_name("ENG-7", "!!!") == "feat/eng-7"

    @given(issue_ids, titles)
    def test_deterministic(self, issue_id: str, title: str) -> None:
        assert generate_branch_name(issue_id, title) == generate_branch_name(issue_id, title)

    @given(issue_ids, titles)
    def test_only_safe_characters(self, issue_id: str, title: str) -> None:
        name = generate_branch_name(issue_id, title)
        assert _BRANCH_CHARS.match(name)
        assert name.startswith(BRANCH_PREFIX)
        assert not name.endswith("-")
        assert "--" not in name

    @given(issue_ids, titles)
    def test_bounded_length_for_short_ids(self, issue_id: str, title: str) -> None:
        ident = issue_id.lower()
        assert len(generate_branch_name(issue_id, title)) <= len(BRANCH_PREFIX) + len(ident) + 41

    @given(issue_ids, titles)
    def test_contains_issue_id(self, issue_id: str, title: str) -> None:
        assert issue_id.lower() in generate_branch_name(issue_id, title)


class TestSlugify:
    def test_truncates_without_trailing_dash(self) -> None:
        slug = slugify("word " * 20, max_len=12)
        assert len(slug) <= 12
        assert not slug.endswith("-")

    def test_unicode_is_dropped(self) -> None:
        assert slugify("Café déjà vu") == "caf-d-j-vu"


class TestDetermineRepoPath:
    REPOS = [
        RepoConfig(name="api", path="services/api", match="[API]"),
        RepoConfig(name="web", path="apps/web", match="[WEB]"),
    ]

    def test_no_repos(self, tmp_path: Path) -> None:
        assert determine_repo_path([], Issue(id="A-1", title="x"), tmp_path) is None

    def test_explicit_repo_wins(self, tmp_path: Path) -> None:
        issue = Issue(id="A-1", title="[API] something", repo="web")
        assert determine_repo_path(self.REPOS, issue, tmp_path) == tmp_path / "apps/web"

    def test_title_prefix(self, tmp_path: Path) -> None:
        issue = Issue(id="A-1", title="[WEB] dark mode")
        assert determine_repo_path(self.REPOS, issue, tmp_path) == tmp_path / "apps/web"

    def test_defaults_to_first_repo(self, tmp_path: Path) -> None:
        issue = Issue(id="A-1", title="general cleanup")
        assert determine_repo_path(self.REPOS, issue, tmp_path) == tmp_path / "services/api"


class TestWorktreeGitignore:
    def test_creates_file(self, tmp_path: Path) -> None:
        assert ensure_worktree_gitignore(tmp_path) is True
        assert (tmp_path / ".gitignore").read_text() == ".worktrees\n"

    def test_appends_once(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text("node_modules/")
        assert ensure_worktree_gitignore(tmp_path) is True
        assert ensure_worktree_gitignore(tmp_path) is False
        assert (tmp_path / ".gitignore").read_text() == "node_modules/\n.worktrees\n"

    def test_recognizes_trailing_slash(self, tmp_path: Path) -> None:
        (tmp_path / ".gitignore").write_text(".worktrees/\n")
        assert ensure_worktree_gitignore(tmp_path) is False
