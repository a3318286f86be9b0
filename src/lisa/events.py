"""Session events and the in-process event bus.

The scheduler publishes lifecycle events; front-ends, loggers and tests
subscribe without reaching into scheduler internals. Control requests
(pause/resume/kill/skip) travel over the same bus in the other direction.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


def _new_event_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now()


class DomainEvent(Protocol):
    """Base protocol for all events."""

    @property
    def event_id(self) -> str: ...

    @property
    def occurred_at(self) -> datetime: ...


EventHandler = Callable[[DomainEvent], None]


class ControlChannel(Protocol):
    """Subscription side of the bus, all the overseer needs."""

    def add_handler(
        self,
        handler: EventHandler,
        event_type: type[DomainEvent] | None = None,
    ) -> None: ...

    def remove_handler(self, handler: EventHandler) -> None: ...


class EventBus(ControlChannel, Protocol):
    """Async fan-out bus for session events."""

    async def publish(self, event: DomainEvent) -> None:
        """Publish a single event to subscribers."""
        ...

    def publish_nowait(self, event: DomainEvent) -> None:
        """Publish from synchronous code (signal handlers, callbacks)."""
        ...

    def subscribe(self, event_type: type[DomainEvent] | None = None) -> AsyncIterator[DomainEvent]:
        """Subscribe to events (optionally filtered by type)."""
        ...


# --- Emitted by the scheduler ---


@dataclass(frozen=True)
class IssueQueued:
    issue_id: str
    title: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueStarted:
    issue_id: str
    branch_name: str
    log_file: str | None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueOutput:
    issue_id: str
    stream: str
    text: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueDone:
    issue_id: str
    pr_url: str | None
    provider_used: str | None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueReverted:
    """The session failed and the issue went back to the pick-from status."""

    issue_id: str
    reason: str
    log_file: str | None = None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueSkipped:
    issue_id: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class IssueKilled:
    issue_id: str
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class WorkComplete:
    """The scheduler loop exited."""

    sessions: int
    succeeded: int
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


# --- Accepted by the scheduler ---


@dataclass(frozen=True)
class PauseProvider:
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ResumeProvider:
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class KillRequested:
    """Kill one running session, or every running session when issue_id is None."""

    issue_id: str | None = None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class SkipRequested:
    """Skip one running session, or every running session when issue_id is None."""

    issue_id: str | None = None
    event_id: str = field(default_factory=_new_event_id)
    occurred_at: datetime = field(default_factory=_now)


class InMemoryEventBus:
    """Simple async event bus with fan-out to handlers and async subscribers.

    Suitable for single-process use. Events are not persisted or replayed;
    new subscribers only receive future events. A failing handler is logged
    and never prevents delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[type[DomainEvent] | None, EventHandler]] = []
        self._queues: list[tuple[type[DomainEvent] | None, asyncio.Queue[DomainEvent]]] = []

    def publish_nowait(self, event: DomainEvent) -> None:
        """Publish event to all matching handlers and subscribers."""
        for filter_type, handler in list(self._handlers):
            if filter_type is None or isinstance(event, filter_type):
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler failed for %s", type(event).__name__)

        for filter_type, queue in list(self._queues):
            if filter_type is None or isinstance(event, filter_type):
                with contextlib.suppress(asyncio.QueueFull):
                    queue.put_nowait(event)

    async def publish(self, event: DomainEvent) -> None:
        self.publish_nowait(event)

    def add_handler(
        self,
        handler: EventHandler,
        event_type: type[DomainEvent] | None = None,
    ) -> None:
        """Register a synchronous handler for events."""
        self._handlers.append((event_type, handler))

    def remove_handler(self, handler: EventHandler) -> None:
        """Remove a previously registered handler."""
        self._handlers = [(t, h) for t, h in self._handlers if h is not handler]

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def subscribe(
        self, event_type: type[DomainEvent] | None = None
    ) -> AsyncIterator[DomainEvent]:
        """Subscribe to events, yielding them as they arrive."""
        queue: asyncio.Queue[DomainEvent] = asyncio.Queue(maxsize=1000)
        self._queues.append((event_type, queue))
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues = [(t, q) for t, q in self._queues if q is not queue]
