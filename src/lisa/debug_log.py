"""Logging setup with an in-memory ring buffer.

Module code logs through ``logging.getLogger(__name__)``. ``setup_logging``
routes records to a rich console handler and to a bounded buffer that any
front-end (or a test) can read without touching the scheduler.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.logging import RichHandler

from lisa.limits import MAX_LOG_LINES, MAX_LOG_MESSAGE_LENGTH

if TYPE_CHECKING:
    from pathlib import Path


@dataclass(slots=True)
class LogEntry:
    """A captured log entry."""

    level: str
    logger: str
    message: str
    timestamp: float


log_buffer: deque[LogEntry] = deque(maxlen=MAX_LOG_LINES)

# Track generation to detect buffer clears
_buffer_generation: int = 0


def _truncate(message: str) -> str:
    if len(message) > MAX_LOG_MESSAGE_LENGTH:
        return message[:MAX_LOG_MESSAGE_LENGTH] + "... [truncated]"
    return message


class DebugLogHandler(logging.Handler):
    """Logging handler that captures logs to the ring buffer."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            log_buffer.append(
                LogEntry(
                    level=record.levelname,
                    logger=record.name,
                    message=_truncate(self.format(record)),
                    timestamp=record.created,
                )
            )
        except Exception:
            self.handleError(record)


_logging_initialized: bool = False


def setup_logging(*, verbose: bool = False, console: Console | None = None) -> None:
    """Install the console and buffer handlers on the ``lisa`` logger.

    Idempotent - calling it again only adjusts the level.
    """
    global _logging_initialized

    package_logger = logging.getLogger("lisa")
    package_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if _logging_initialized:
        return

    buffer_handler = DebugLogHandler()
    buffer_handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(buffer_handler)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    package_logger.addHandler(console_handler)
    package_logger.propagate = False

    _logging_initialized = True


def clear_log_buffer() -> None:
    """Clear the log buffer."""
    global _buffer_generation
    log_buffer.clear()
    _buffer_generation += 1


def get_buffer_generation() -> int:
    """Get the current buffer generation (incremented on clear)."""
    return _buffer_generation


def export_logs_to_file(path: Path) -> int:
    """Export all buffered entries to *path*. Returns the number written."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        f.write("# lisa debug log export\n")
        f.write(f"# Total entries: {len(log_buffer)}\n\n")
        for entry in log_buffer:
            ts = datetime.fromtimestamp(entry.timestamp).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
            f.write(f"{ts} [{entry.level}] {entry.logger}: {entry.message}\n")
    return len(log_buffer)
