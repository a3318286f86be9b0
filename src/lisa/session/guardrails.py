"""Guardrails: a capped markdown log of past failures fed into new prompts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from lisa.limits import GUARDRAIL_CONTEXT_LINES, MAX_GUARDRAIL_ENTRIES
from lisa.paths import write_text_atomic
from lisa.session.overseer import ERROR_LOOP_MESSAGE, STUCK_MESSAGE

if TYPE_CHECKING:
    from pathlib import Path

DEFAULT_HEADER = "# Guardrails - lessons learned"
_ENTRY_START = re.compile(r"^## ", re.MULTILINE)


@dataclass(frozen=True, slots=True)
class GuardrailEntry:
    issue_id: str
    date: str
    provider: str
    error_type: str
    context: str

    def format(self) -> str:
        return "\n".join(
            [
                f"## Issue {self.issue_id} ({self.date})",
                f"- Provider: {self.provider}",
                f"- Error: {self.error_type}",
                "- Context:",
                "```",
                _ENTRY_START.sub("  ## ", self.context),
                "```",
            ]
        )


def extract_context(output: str, lines: int = GUARDRAIL_CONTEXT_LINES) -> str:
    """Last *lines* lines of the output."""
    return "\n".join(output.strip().split("\n")[-lines:])


def extract_error_type(output: str) -> str:
    if STUCK_MESSAGE.strip() in output:
        return "Stuck (no working-tree changes)"
    if ERROR_LOOP_MESSAGE.strip() in output:
        return "Error loop"
    if re.search(r"429|rate.?limit|quota", output, re.IGNORECASE):
        return "Rate limit / quota exceeded"
    if re.search(r"ETIMEDOUT|ECONNREFUSED|ECONNRESET|ENOTFOUND", output):
        return "Network error"
    if re.search(r"timeout|timed?\s*out", output, re.IGNORECASE):
        return "Timeout"
    if match := re.search(r"exit code[:\s]+(\d+)", output, re.IGNORECASE):
        return f"Exit code {match.group(1)}"
    if re.search(r"exit(?:ed)? with", output, re.IGNORECASE):
        return "Non-zero exit code"
    return "Unknown error"


def _split(content: str) -> tuple[str, list[str]]:
    starts = [m.start() for m in _ENTRY_START.finditer(content)]
    if not starts:
        return content.strip(), []
    header = content[: starts[0]].strip()
    bounds = [*starts, len(content)]
    entries = [content[bounds[i] : bounds[i + 1]].strip() for i in range(len(starts))]
    return header, entries


class Guardrails:
    """Guardrails file for one workspace, keeping the newest entries only."""

    def __init__(self, path: Path, max_entries: int = MAX_GUARDRAIL_ENTRIES) -> None:
        self.path = path
        self.max_entries = max_entries

    def read(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8")
        except (FileNotFoundError, UnicodeDecodeError):
            return ""

    def entries(self) -> list[str]:
        return _split(self.read())[1]

    def append(self, entry: GuardrailEntry) -> None:
        """Append *entry*, dropping the oldest ones beyond ``max_entries``.

        A custom header written above the first entry is preserved.
        """
        existing = self.read()
        header, entries = _split(existing) if existing.strip() else ("", [])
        entries.append(entry.format())
        entries = entries[-self.max_entries :]
        body = "\n\n".join(entries)
        write_text_atomic(self.path, f"{header or DEFAULT_HEADER}\n\n{body}\n")

    def record_failure(self, issue_id: str, provider: str, output: str) -> GuardrailEntry:
        entry = GuardrailEntry(
            issue_id=issue_id,
            date=datetime.now().strftime("%Y-%m-%d"),
            provider=provider,
            error_type=extract_error_type(output),
            context=extract_context(output),
        )
        self.append(entry)
        return entry

    def build_section(self) -> str:
        """Prompt section with the recorded pitfalls, empty when there are none."""
        content = self.read()
        if not content.strip():
            return ""
        return f"\n## Guardrails - avoid these known pitfalls\n\n{content}\n"
