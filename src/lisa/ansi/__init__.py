"""Terminal output cleaning."""

from lisa.ansi.cleaner import clean_terminal_output, strip_ansi

__all__ = ["clean_terminal_output", "strip_ansi"]
