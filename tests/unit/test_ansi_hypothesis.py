"""Property-based tests for the ANSI terminal output cleaner."""

from __future__ import annotations

import pytest
from hypothesis import given

from lisa.ansi import clean_terminal_output, strip_ansi
from lisa.ansi.cleaner import split_incomplete_tail
from tests.strategies import plain_text, text_with_ansi

pytestmark = pytest.mark.unit


class TestStripAnsiProperties:
    @given(plain_text)
    def test_plain_text_unchanged(self, text: str) -> None:
        assert strip_ansi(text) == text

    @given(text_with_ansi())
    def test_no_escape_in_output(self, text: str) -> None:
        assert "\x1b" not in strip_ansi(text)

    @given(text_with_ansi())
    def test_idempotence(self, text: str) -> None:
        once = strip_ansi(text)
        assert strip_ansi(once) == once

    @given(text_with_ansi())
    def test_length_never_increases(self, text: str) -> None:
        assert len(strip_ansi(text)) <= len(text)

    @given(text_with_ansi())
    def test_no_carriage_returns_survive(self, text: str) -> None:
        assert "\r" not in strip_ansi(text)

    @given(text_with_ansi())
    def test_alias_equivalence(self, text: str) -> None:
        assert clean_terminal_output(text) == strip_ansi(text)


class TestStripAnsiExamples:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("\x1b[31mError\x1b[0m: boom", "Error: boom"),
            ("\x1b]0;claude\x07working", "working"),
            ("line1\r\nline2\r\n", "line1\nline2\n"),
            ("progress\rdone", "progress\ndone"),
            ("\x1b[?25l\x1b[2Kthinking", "thinking"),
            ("", ""),
        ],
    )
    def test_known_sequences(self, raw: str, expected: str) -> None:
        assert strip_ansi(raw) == expected


class TestSplitIncompleteTail:
    def test_unterminated_csi_is_held(self) -> None:
        assert split_incomplete_tail("hello \x1b[3") == ("hello ", "\x1b[3")

    def test_trailing_carriage_return_is_held(self) -> None:
        assert split_incomplete_tail("line\r") == ("line", "\r")

    def test_complete_text_passes(self) -> None:
        assert split_incomplete_tail("done \x1b[0m") == ("done \x1b[0m", "")
