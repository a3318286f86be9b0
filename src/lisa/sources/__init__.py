"""Issue sources."""

from __future__ import annotations

from typing import TYPE_CHECKING

from lisa.sources.base import Source
from lisa.sources.local import LocalSource

if TYPE_CHECKING:
    from pathlib import Path

__all__ = ["LocalSource", "Source", "create_source"]


def create_source(name: str, workspace: Path) -> Source:
    """Build the source named in the configuration."""
    if name == "local":
        return LocalSource(workspace)
    raise ValueError(f"Unknown source: {name}. Available: local")
