"""Pytest fixtures for lisa tests."""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from hypothesis import Phase, Verbosity, settings

_TEST_BASE_DIR = Path(tempfile.mkdtemp(prefix="lisa-tests-"))
os.environ["LISA_CACHE_DIR"] = str(_TEST_BASE_DIR / "cache")

if TYPE_CHECKING:
    from collections.abc import Generator

    from lisa.events import InMemoryEventBus


settings.register_profile(
    "ci",
    max_examples=100,
    deadline=None,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
)
settings.register_profile(
    "dev",
    max_examples=20,
    deadline=500,
)
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
)
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "dev"))


@pytest.fixture(autouse=True)
def _clean_cache_dir() -> Generator[None, None, None]:
    """Ensure session logs, guardrails and PR cache don't leak between tests."""
    yield
    shutil.rmtree(Path(os.environ["LISA_CACHE_DIR"]), ignore_errors=True)


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    from lisa.events import InMemoryEventBus

    return InMemoryEventBus()


@pytest.fixture
async def git_repo(tmp_path: Path) -> Path:
    """A git repository on ``main`` with one commit, pushed to a local bare origin."""
    from tests.helpers.git import init_git_repo_with_origin

    return await init_git_repo_with_origin(tmp_path)
