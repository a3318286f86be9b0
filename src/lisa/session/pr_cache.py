"""Issue to pull-request URL cache.

When an issue comes back (review feedback, reopened), the previous PR URL is
injected into the next prompt so the agent can read the review comments.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from lisa.paths import write_text_atomic

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)


class PrCache:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable PR cache %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, cache: dict[str, str]) -> None:
        write_text_atomic(self.path, json.dumps(cache, indent=2, sort_keys=True) + "\n")

    def store(self, issue_id: str, url: str) -> None:
        cache = self._read()
        cache[issue_id] = url
        self._write(cache)

    def load(self, issue_id: str) -> str | None:
        return self._read().get(issue_id)

    def clear(self, issue_id: str) -> None:
        cache = self._read()
        if cache.pop(issue_id, None) is not None:
            self._write(cache)
