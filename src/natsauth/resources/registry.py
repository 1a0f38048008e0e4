"""
Resource Registry

In-process stand-in for the orchestration platform's object store. Holds the
declared NatsAuthConfig, NatsAccount and NatsUser resources with:
- generation (bumped on spec changes only)
- resource_version (bumped on every write, used for optimistic concurrency)
- annotations (used to mark a resource dirty for re-reconciliation)
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional, Union

from natsauth.constants import DEFAULT_NAMESPACE
from natsauth.events import (
    EVENT_RESOURCE_APPLIED,
    EVENT_RESOURCE_DELETED,
    EVENT_RESOURCE_TOUCHED,
    Event,
    EventBus,
    InMemoryEventBus,
)
from natsauth.exceptions import StoreConflictError
from natsauth.resources.models import Resource, ResourceKey

logger = logging.getLogger(__name__)

KindLike = Union[str, type[Resource]]


def _kind_name(kind: KindLike) -> str:
    return kind if isinstance(kind, str) else kind.kind


class ResourceRegistry:
    """
    Declared-state store.

    Every read returns a deep copy so callers never share mutable state with
    the registry or with each other.
    """

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._objects: dict[ResourceKey, Resource] = {}
        self._lock = asyncio.Lock()
        self.event_bus = event_bus if event_bus is not None else InMemoryEventBus()

    def _emit(self, event_type: str, resource: Resource, **payload) -> None:
        self.event_bus.emit(
            Event(
                event_type=event_type,
                source="registry",
                payload={
                    "kind": resource.kind,
                    "namespace": resource.namespace,
                    "name": resource.name,
                    **payload,
                },
            )
        )

    async def apply(self, resource: Resource) -> Resource:
        """
        Create a resource or update its spec.

        Status supplied by the caller is ignored for existing resources.

        Returns:
            The stored resource.
        """
        async with self._lock:
            key = resource.key
            existing = self._objects.get(key)
            stored = resource.model_copy(deep=True)

            if existing is None:
                stored.metadata.generation = 1
                stored.metadata.resource_version = 1
            else:
                spec_changed = existing.spec != stored.spec
                stored.metadata.generation = existing.metadata.generation + (1 if spec_changed else 0)
                stored.metadata.resource_version = existing.metadata.resource_version + 1
                stored.metadata.annotations = {
                    **existing.metadata.annotations,
                    **stored.metadata.annotations,
                }
                stored.status = existing.status.model_copy(deep=True)

            self._objects[key] = stored
            result = stored.model_copy(deep=True)

        logger.debug("Applied %s (generation %d)", key, result.metadata.generation)
        self._emit(EVENT_RESOURCE_APPLIED, result)
        return result

    async def get(
        self,
        kind: KindLike,
        name: str,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> Optional[Resource]:
        """Return a copy of the resource, or None if it does not exist."""
        stored = self._objects.get(ResourceKey(_kind_name(kind), namespace, name))
        if stored is None:
            return None
        return stored.model_copy(deep=True)

    async def list(self, kind: KindLike, namespace: Optional[str] = None) -> list[Resource]:
        """Return copies of all resources of *kind*, sorted by namespace and name."""
        kind_name = _kind_name(kind)
        items = [
            obj.model_copy(deep=True)
            for key, obj in sorted(self._objects.items())
            if key.kind == kind_name and (namespace is None or key.namespace == namespace)
        ]
        return items

    async def update_status(self, resource: Resource) -> Resource:
        """
        Persist the status of *resource*.

        Raises:
            StoreConflictError: If the resource changed since it was read, or
                no longer exists.
        """
        async with self._lock:
            existing = self._objects.get(resource.key)
            if existing is None:
                raise StoreConflictError(f"{resource.key} no longer exists")
            if existing.metadata.resource_version != resource.metadata.resource_version:
                raise StoreConflictError(
                    f"{resource.key} was modified (expected version "
                    f"{resource.metadata.resource_version}, found {existing.metadata.resource_version})"
                )
            existing.status = resource.status.model_copy(deep=True)
            existing.metadata.resource_version += 1
            return existing.model_copy(deep=True)

    async def touch(self, key: ResourceKey, annotation: str) -> bool:
        """
        Mark a resource dirty by bumping an annotation.

        The resulting ``resource.touched`` event makes the engine reconcile
        the resource again without any direct call between reconcilers.

        Returns:
            True if the resource exists and was touched.
        """
        async with self._lock:
            existing = self._objects.get(key)
            if existing is None:
                return False
            existing.metadata.annotations[annotation] = datetime.now(timezone.utc).isoformat()
            existing.metadata.resource_version += 1
            result = existing.model_copy(deep=True)

        logger.debug("Touched %s via %s", key, annotation)
        self._emit(EVENT_RESOURCE_TOUCHED, result, annotation=annotation)
        return True

    async def delete(self, key: ResourceKey) -> Optional[Resource]:
        """Remove a resource and return its last stored state."""
        async with self._lock:
            removed = self._objects.pop(key, None)
        if removed is None:
            return None

        payload = {}
        auth_config_ref = getattr(removed.spec, "auth_config_ref", None)
        if auth_config_ref is not None:
            payload["auth_config"] = auth_config_ref.name
            payload["auth_config_namespace"] = auth_config_ref.resolve_namespace(removed.namespace)
        self._emit(EVENT_RESOURCE_DELETED, removed, **payload)
        return removed

    def __len__(self) -> int:
        return len(self._objects)
