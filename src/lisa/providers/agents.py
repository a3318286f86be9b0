"""Built-in coding-agent providers and the provider registry."""

from __future__ import annotations

import asyncio
import json
import os
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, ClassVar

from lisa.providers.base import CliProvider

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from lisa.providers.base import Provider, RunOptions


class ClaudeProvider(CliProvider):
    """Claude Code in print mode, streaming JSON events."""

    name = "claude"
    executables = ("claude",)
    # stream-json lines must not be reflowed by a terminal
    prefers_pty = False

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = [
            "--dangerously-skip-permissions",
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if options.model:
            args += ["--model", options.model]
        return args

    def parse_output(self, raw: str) -> str:
        """Collect assistant text from stream-json events.

        Lines that are not JSON are kept as-is so error messages printed by
        the CLI itself survive for failure classification.
        """
        text_parts: list[str] = []
        result_text: str | None = None
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                text_parts.append(line + "\n")
                continue
            if not isinstance(event, dict):
                continue
            if event.get("type") == "stream_event" and isinstance(event.get("event"), dict):
                event = event["event"]
            match event.get("type"):
                case "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        text_parts.append(str(delta.get("text", "")))
                case "assistant":
                    for block in (event.get("message") or {}).get("content") or []:
                        if isinstance(block, dict) and block.get("type") == "text":
                            text_parts.append(str(block.get("text", "")) + "\n")
                case "result":
                    if isinstance(event.get("result"), str):
                        result_text = event["result"]
        if text_parts:
            return "".join(text_parts)
        return result_text if result_text is not None else raw


class GeminiProvider(CliProvider):
    name = "gemini"
    executables = ("gemini",)

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["--yolo", "-p", prompt]
        if options.model:
            args += ["-m", options.model]
        return args


class OpenCodeProvider(CliProvider):
    name = "opencode"
    executables = ("opencode",)

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["run"]
        if options.model:
            args += ["--model", options.model]
        return [*args, prompt]


class CodexProvider(CliProvider):
    name = "codex"
    executables = ("codex",)

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["exec", "--full-auto"]
        if options.model:
            args += ["-m", options.model]
        return [*args, prompt]


AIDER_API_KEY_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "GEMINI_API_KEY",
    "OPENROUTER_API_KEY",
    "MISTRAL_API_KEY",
    "DEEPSEEK_API_KEY",
    "AZURE_API_KEY",
)


class AiderProvider(CliProvider):
    name = "aider"
    executables = ("aider",)

    def missing_requirement(self) -> str | None:
        # Without a key aider starts an OAuth browser flow and hangs.
        if any(os.environ.get(var) for var in AIDER_API_KEY_ENV_VARS):
            return None
        names = ", ".join(AIDER_API_KEY_ENV_VARS)
        return f"Aider requires a direct LLM API key. Set one of: {names}"

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["--message", prompt, "--yes-always"]
        if options.model:
            args += ["--model", options.model]
        return args


class GooseProvider(CliProvider):
    name = "goose"
    executables = ("goose",)

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["run"]
        if options.model:
            args += ["--model", options.model]
        return [*args, "--text", prompt]


class CopilotProvider(CliProvider):
    name = "copilot"
    executables = ("copilot",)
    error_pattern = re.compile(r"^(Error|✗) ")

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        # --allow-all: no tool/path/url permission prompts
        args = ["--allow-all", "-p", prompt]
        if options.model:
            args += ["--model", options.model]
        return args


class CursorProvider(CliProvider):
    name = "cursor"
    executables = ("agent", "cursor-agent")
    prefers_pty = False

    def build_args(self, prompt: str, options: RunOptions) -> Sequence[str]:
        args = ["-p", prompt, "--output-format", "text", "--force"]
        if options.model:
            args += ["--model", options.model]
        return args


@dataclass(frozen=True)
class ProviderInfo:
    """Registry entry describing a built-in provider."""

    name: str
    description: str
    install_command: str
    factory: Callable[[], Provider]


BUILTIN_PROVIDERS: dict[str, ProviderInfo] = {
    "claude": ProviderInfo(
        name="claude",
        description="Claude Code",
        install_command="npm install -g @anthropic-ai/claude-code",
        factory=ClaudeProvider,
    ),
    "gemini": ProviderInfo(
        name="gemini",
        description="Gemini CLI",
        install_command="npm install -g @google/gemini-cli",
        factory=GeminiProvider,
    ),
    "opencode": ProviderInfo(
        name="opencode",
        description="OpenCode",
        install_command="npm i -g opencode-ai",
        factory=OpenCodeProvider,
    ),
    "codex": ProviderInfo(
        name="codex",
        description="Codex CLI",
        install_command="npm install -g @openai/codex",
        factory=CodexProvider,
    ),
    "aider": ProviderInfo(
        name="aider",
        description="Aider",
        install_command="python -m pip install aider-install && aider-install",
        factory=AiderProvider,
    ),
    "goose": ProviderInfo(
        name="goose",
        description="Goose",
        install_command="brew install block-goose-cli",
        factory=GooseProvider,
    ),
    "copilot": ProviderInfo(
        name="copilot",
        description="GitHub Copilot CLI",
        install_command="npm install -g @github/copilot",
        factory=CopilotProvider,
    ),
    "cursor": ProviderInfo(
        name="cursor",
        description="Cursor Agent",
        install_command="curl https://cursor.com/install -fsS | bash",
        factory=CursorProvider,
    ),
}


class UnknownProviderError(ValueError):
    """Raised for a provider name that is not registered."""


def create_provider(name: str) -> Provider:
    """Instantiate a built-in provider by name.

    Raises:
        UnknownProviderError: If *name* is not a built-in provider.
    """
    info = BUILTIN_PROVIDERS.get(name)
    if info is None:
        available = ", ".join(BUILTIN_PROVIDERS)
        raise UnknownProviderError(f"Unknown provider: {name}. Available: {available}")
    return info.factory()


async def get_available_providers() -> list[Provider]:
    """Return the built-in providers whose CLI is installed."""
    providers = [info.factory() for info in BUILTIN_PROVIDERS.values()]
    available = await asyncio.gather(*(provider.is_available() for provider in providers))
    return [provider for provider, ok in zip(providers, available, strict=True) if ok]
