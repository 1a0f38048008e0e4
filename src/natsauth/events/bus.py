"""
Event bus for decoupled notification between reconcilers.

Reconcilers never call each other. The resource registry emits events when
declared state changes or when a dependent is marked dirty, and the engine
turns those events into work-queue entries.
"""

from __future__ import annotations

import fnmatch
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable


# Standard event types
EVENT_RESOURCE_APPLIED = "resource.applied"
EVENT_RESOURCE_TOUCHED = "resource.touched"
EVENT_RESOURCE_DELETED = "resource.deleted"
EVENT_CREDENTIALS_ISSUED = "credentials.issued"
EVENT_CONFIG_RENDERED = "config.rendered"

ALL_EVENT_TYPES = [
    EVENT_RESOURCE_APPLIED,
    EVENT_RESOURCE_TOUCHED,
    EVENT_RESOURCE_DELETED,
    EVENT_CREDENTIALS_ISSUED,
    EVENT_CONFIG_RENDERED,
]


@dataclass
class Event:
    """An event emitted inside natsauth."""

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: f"evt-{time.monotonic_ns()}")


EventHandler = Callable[[Event], Any]


class EventBus(ABC):
    """Abstract base class for event bus implementations."""

    @abstractmethod
    def emit(self, event: Event) -> None:
        """Emit an event to all matching subscribers."""

    @abstractmethod
    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        """Subscribe a handler to events matching a glob-style pattern.

        Args:
            pattern: Glob-style pattern (e.g., ``resource.*``, ``*``).
            handler: Callable invoked with the matching Event.
        """

    @abstractmethod
    def unsubscribe(self, handler: EventHandler) -> None:
        """Remove a handler from all subscriptions."""


class InMemoryEventBus(EventBus):
    """Synchronous in-process event bus with glob-style pattern matching."""

    def __init__(self) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []

    def emit(self, event: Event) -> None:
        for pattern, handler in list(self._subscriptions):
            if fnmatch.fnmatch(event.event_type, pattern):
                handler(event)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscriptions = [
            (p, h) for p, h in self._subscriptions if h is not handler
        ]
