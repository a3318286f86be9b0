"""Numeric limits and timeouts - no circular dependencies."""

from __future__ import annotations

PROVIDER_TIMEOUT = 30 * 60.0
"""Overall wall-clock ceiling for one provider run, independent of supervision."""

NETWORK_TIMEOUT = 60.0
GIT_SNAPSHOT_TIMEOUT = 10.0
SHUTDOWN_TIMEOUT = 5.0
AVAILABILITY_TIMEOUT = 15.0

OUTPUT_LIMIT = 500_000
READ_BUFFER_SIZE = 64 * 1024

ERROR_LOOP_THRESHOLD = 25
MAX_GUARDRAIL_ENTRIES = 20
GUARDRAIL_CONTEXT_LINES = 20
MAX_LOG_FILES = 20

MAX_LOG_MESSAGE_LENGTH = 4096
MAX_LOG_LINES = 2000
