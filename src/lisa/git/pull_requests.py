"""Pull-request collaborator: create PRs and credit the agent that wrote them."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal, Protocol

from lisa.errors import LisaError
from lisa.limits import NETWORK_TIMEOUT

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

PROVIDER_DISPLAY_NAMES: dict[str, str] = {
    "claude": "Claude Code",
    "gemini": "Gemini CLI",
    "opencode": "OpenCode",
    "copilot": "GitHub Copilot CLI",
    "cursor": "Cursor Agent",
    "goose": "Goose",
    "aider": "Aider",
    "codex": "OpenAI Codex",
}

ATTRIBUTION_MARKER = "Resolved by lisa using"
_ATTRIBUTION_RE = re.compile(r"\n*---\n[^\n]*" + re.escape(ATTRIBUTION_MARKER) + r"[^\n]*\s*$")
_PR_NUMBER_RE = re.compile(r"/pull/(\d+)")


class PullRequestError(LisaError):
    """Raised when a pull request cannot be created."""


@dataclass(frozen=True, slots=True)
class PullRequest:
    url: str
    number: int | None = None


class PullRequests(Protocol):
    """PR-creation collaborator used by the scheduler."""

    async def create_pull_request(
        self, *, head: str, base: str, title: str, body: str, cwd: Path
    ) -> PullRequest: ...

    async def append_attribution(self, url: str, provider_used: str) -> None:
        """Credit the provider in the PR body. Best-effort, never raises."""
        ...


def format_provider_name(provider_used: str) -> str:
    key = provider_used.split("/", 1)[0]
    return PROVIDER_DISPLAY_NAMES.get(key, key)


def strip_attribution(body: str) -> str:
    return _ATTRIBUTION_RE.sub("", body).rstrip()


def with_attribution(body: str, provider_used: str) -> str:
    """Replace any previous attribution footer with one for *provider_used*."""
    footer = f"{ATTRIBUTION_MARKER} **{format_provider_name(provider_used)}**"
    return f"{strip_attribution(body)}\n\n---\n{footer}"


class GitHubCliPullRequests:
    """Pull requests through the ``gh`` CLI.

    ``auth="token"`` hands ``GITHUB_TOKEN`` to gh instead of relying on its
    stored login.
    """

    def __init__(
        self, *, auth: Literal["cli", "token"] = "cli", timeout: float = NETWORK_TIMEOUT
    ) -> None:
        self._auth = auth
        self._timeout = timeout

    def _env(self) -> dict[str, str] | None:
        if self._auth != "token":
            return None
        token = os.environ.get("GITHUB_TOKEN")
        if not token:
            raise PullRequestError("GITHUB_TOKEN is not set")
        return {**os.environ, "GH_TOKEN": token}

    async def _gh(self, *args: str, cwd: Path | None = None) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "gh",
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
                env=self._env(),
            )
        except FileNotFoundError as e:
            raise PullRequestError("gh is not installed or not in PATH") from e
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except TimeoutError as e:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise PullRequestError(f"gh {args[0]} timed out") from e
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip()
            raise PullRequestError(f"gh {' '.join(args[:2])} failed: {detail}")
        return stdout.decode(errors="replace").strip()

    async def create_pull_request(
        self, *, head: str, base: str, title: str, body: str, cwd: Path
    ) -> PullRequest:
        output = await self._gh(
            "pr",
            "create",
            "--head",
            head,
            "--base",
            base,
            "--title",
            title,
            "--body",
            body,
            cwd=cwd,
        )
        # gh prints progress lines before the URL on some versions
        url = output.splitlines()[-1].strip() if output else ""
        if not url:
            raise PullRequestError("gh pr create did not return a URL")
        match = _PR_NUMBER_RE.search(url)
        return PullRequest(url=url, number=int(match.group(1)) if match else None)

    async def append_attribution(self, url: str, provider_used: str) -> None:
        try:
            raw = await self._gh("pr", "view", url, "--json", "body")
            body = json.loads(raw).get("body") or ""
            await self._gh("pr", "edit", url, "--body", with_attribution(body, provider_used))
        except (PullRequestError, json.JSONDecodeError) as e:
            logger.warning("Could not add attribution to %s: %s", url, e)
