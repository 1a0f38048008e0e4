"""Event bus for natsauth."""

from .bus import (
    ALL_EVENT_TYPES,
    EVENT_CONFIG_RENDERED,
    EVENT_CREDENTIALS_ISSUED,
    EVENT_RESOURCE_APPLIED,
    EVENT_RESOURCE_DELETED,
    EVENT_RESOURCE_TOUCHED,
    Event,
    EventBus,
    EventHandler,
    InMemoryEventBus,
)

__all__ = [
    "Event",
    "EventBus",
    "EventHandler",
    "InMemoryEventBus",
    "EVENT_RESOURCE_APPLIED",
    "EVENT_RESOURCE_TOUCHED",
    "EVENT_RESOURCE_DELETED",
    "EVENT_CREDENTIALS_ISSUED",
    "EVENT_CONFIG_RENDERED",
    "ALL_EVENT_TYPES",
]
