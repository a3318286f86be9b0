"""XDG-compliant path helpers for lisa cache storage.

Per-project state (session logs, guardrails, PR cache) lives under the user
cache directory, keyed by a hash of the workspace path so repositories are
never polluted with lisa's own files.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import re
import tempfile
from pathlib import Path

from platformdirs import user_cache_dir

from lisa.limits import MAX_LOG_FILES

WORKTREES_DIR_NAME = ".worktrees"
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def project_hash(workspace: Path) -> str:
    """Return a short deterministic hash of the resolved workspace path."""
    canonical = str(Path(workspace).resolve())
    return hashlib.sha256(canonical.encode()).hexdigest()[:12]


def get_cache_root() -> Path:
    """Get the cache root for lisa (all projects)."""
    override = os.environ.get("LISA_CACHE_DIR")
    if override:
        return Path(override)
    return Path(user_cache_dir("lisa"))


def get_cache_dir(workspace: Path) -> Path:
    """Get the cache directory for one workspace."""
    return get_cache_root() / project_hash(workspace)


def get_logs_dir(workspace: Path) -> Path:
    return get_cache_dir(workspace) / "logs"


def get_guardrails_path(workspace: Path) -> Path:
    return get_cache_dir(workspace) / "guardrails.md"


def get_pr_cache_path(workspace: Path) -> Path:
    return get_cache_dir(workspace) / "pr-cache.json"


def get_worktrees_dir(repo_root: Path) -> Path:
    """Directory under a repository owned exclusively by the worktree manager."""
    return Path(repo_root) / WORKTREES_DIR_NAME


def safe_filename(value: str) -> str:
    """Replace characters that are unsafe in file names."""
    return _UNSAFE_FILENAME_CHARS.sub("_", value)


def ensure_cache_dir(workspace: Path) -> Path:
    """Create the workspace cache directories if they don't exist."""
    cache_dir = get_cache_dir(workspace)
    get_logs_dir(workspace).mkdir(parents=True, exist_ok=True)
    return cache_dir


def rotate_log_files(workspace: Path, keep: int = MAX_LOG_FILES) -> list[Path]:
    """Delete the oldest session logs beyond *keep*. Returns removed paths."""
    logs_dir = get_logs_dir(workspace)
    if not logs_dir.exists():
        return []

    files = sorted(logs_dir.glob("*.log"), key=lambda p: p.stat().st_mtime)
    excess = len(files) - keep
    if excess <= 0:
        return []

    removed: list[Path] = []
    for path in files[:excess]:
        with contextlib.suppress(OSError):
            path.unlink()
            removed.append(path)
    return removed


def write_text_atomic(path: Path, content: str) -> None:
    """Replace *path* with *content* without ever exposing a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
