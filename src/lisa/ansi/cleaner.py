"""ANSI escape sequence stripper.

Provides regex-based stripping of terminal control codes from agent output
captured through a pseudo-terminal.
"""

from __future__ import annotations

import re

# Alternatives following ESC:
# - CSI sequences: [ ... final_byte (colors, cursor movement, erase)
# - OSC sequences: ] ... BEL or ESC \ (terminal title, hyperlinks)
# - Character set selection: ( B, ) 0, ...
# - Simple escapes: a single char (keypad mode, save/restore cursor, ST)
_SEQUENCE_BODY = (
    r"\[[0-?]*[ -/]*[@-~]"
    r"|\][^\x07\x1B]*(?:\x07|\x1B\\)"
    r"|[()*+][0-9A-Za-z]"
    r"|[@-Z\\^_=>78-]"
)

ANSI_SEQUENCE = re.compile(rf"\x1B(?:{_SEQUENCE_BODY})")
"""A complete escape sequence."""

# A lone ESC that starts none of the sequences is dropped as well so the
# result never contains ESC, which keeps stripping idempotent.
ANSI_ESCAPE = re.compile(rf"\x1B(?:{_SEQUENCE_BODY})?")

ANSI_PARTIAL_TAIL = re.compile(r"\x1B(?:\[[0-?]*[ -/]*|\][^\x07\x1B]*\x1B?|[()*+])?\Z")
"""An escape sequence cut off at the end of a read."""

_MAX_HELD_TAIL = 256
_CRLF = re.compile(r"\r\n?")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences and normalize PTY line endings.

    Args:
        text: Input text potentially containing ANSI codes.

    Returns:
        Clean text with escape sequences removed and CR/CRLF turned into LF.
    """
    if not text:
        return ""
    return _CRLF.sub("\n", ANSI_ESCAPE.sub("", text))


def split_incomplete_tail(text: str) -> tuple[str, str]:
    """Split *text* into a part safe to clean now and a held-back tail.

    The tail is a trailing CR (its LF may arrive in the next read) or an
    escape sequence that has not been terminated yet.
    """
    esc = text.rfind("\x1b")
    if esc != -1 and len(text) - esc <= _MAX_HELD_TAIL and ANSI_PARTIAL_TAIL.match(text, esc):
        return text[:esc], text[esc:]
    if text.endswith("\r"):
        return text[:-1], "\r"
    return text, ""


def clean_terminal_output(text: str) -> str:
    """Process terminal output to produce clean readable text.

    Alias for strip_ansi() kept for callers that think in terms of
    terminal output rather than escape codes.
    """
    return strip_ansi(text)
