"""Test helpers package."""

from tests.helpers.fakes import (
    CountingProcess,
    FakeProcess,
    FakeProvider,
    FakePullRequests,
    FakeSource,
    failed,
    ok,
)
from tests.helpers.git import configure_git_user, git, init_git_repo_with_origin

__all__ = [
    "CountingProcess",
    "FakeProcess",
    "FakeProvider",
    "FakePullRequests",
    "FakeSource",
    "configure_git_user",
    "failed",
    "git",
    "init_git_repo_with_origin",
    "ok",
]
