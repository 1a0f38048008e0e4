"""
Reconciler base class and shared helpers.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from natsauth.config import EngineConfig
from natsauth.events import Event
from natsauth.exceptions import DependencyNotReadyError
from natsauth.identity.keypair import public_key_from_seed
from natsauth.observability.metrics import ReconcileMetrics
from natsauth.resources.models import NatsAuthConfig, ObjectRef, Resource, ResourceKey, SecretRef
from natsauth.resources.registry import ResourceRegistry
from natsauth.storage.credentials import CredentialStore
from natsauth.storage.provider import StoredRecord

logger = logging.getLogger(__name__)


def claims_hash(inputs: dict[str, Any]) -> str:
    """Fingerprint the inputs a token or credential is derived from.

    The fingerprint is SHA-256 over canonical JSON (sorted keys, no
    whitespace), so equal inputs always hash equally.
    """
    canonical = json.dumps(inputs, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def seed_ref_inputs(ref: Optional[SecretRef]) -> Optional[dict[str, Any]]:
    """The part of an external seed reference that feeds a fingerprint."""
    if ref is None or not ref.name:
        return None
    return ref.model_dump()


def is_current(
    record: Optional[StoredRecord],
    seed_field: str,
    required_fields: tuple[str, ...],
    public_key: str,
    recorded_hash: str,
    desired_hash: str,
) -> bool:
    """Decide whether a persisted credential still reflects the desired state.

    True only when the record exists with every required field, the status
    holds a public key, the stored seed re-derives exactly that key, and the
    desired-state fingerprint matches the one recorded at issuance.
    """
    if record is None or not public_key:
        return False
    if any(not record.data.get(name) for name in required_fields):
        return False
    if public_key_from_seed(record.data.get(seed_field, "")) != public_key:
        return False
    return recorded_hash == desired_hash


@dataclass
class Outcome:
    """What a reconciler did: a status message and the dependents to notify.

    Notifications are delivered by the engine only after the reconciled
    resource's status has been persisted, so a dependent never observes a
    parent whose new public key is not recorded yet.
    """

    message: str
    notifications: list[tuple[ResourceKey, str]] = field(default_factory=list)

    def notify(self, key: ResourceKey, annotation: str) -> None:
        self.notifications.append((key, annotation))


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation.

    ``requeue_after`` is None for no requeue, 0 for an immediate retry, or
    a delay in seconds.
    """

    requeue_after: Optional[float] = None
    outcome: str = "success"


class Reconciler(ABC):
    """Reconciles one resource kind.

    Subclasses mutate ``resource.status`` and return an ``Outcome``; the
    engine persists the status, delivers notifications, and turns exceptions
    into error conditions and retry delays.
    """

    resource_type: ClassVar[type[Resource]]

    def __init__(
        self,
        registry: ResourceRegistry,
        store: CredentialStore,
        config: EngineConfig,
        metrics: ReconcileMetrics,
    ):
        self.registry = registry
        self.store = store
        self.config = config
        self.metrics = metrics

    @abstractmethod
    async def reconcile(self, resource: Resource) -> Outcome:
        """Bring persisted credentials in line with *resource*'s declared state."""

    async def get_auth_config(self, ref: ObjectRef, namespace: str) -> NatsAuthConfig:
        """Resolve an AuthConfig reference.

        Raises:
            DependencyNotReadyError: If the AuthConfig does not exist.
        """
        ref_namespace = ref.resolve_namespace(namespace)
        auth_config = await self.registry.get(NatsAuthConfig, ref.name, ref_namespace)
        if auth_config is None:
            raise DependencyNotReadyError(f"NatsAuthConfig {ref_namespace}/{ref.name} not found")
        return auth_config

    def emit(self, event_type: str, resource: Resource, **payload: Any) -> None:
        self.registry.event_bus.emit(
            Event(
                event_type=event_type,
                source=type(self).__name__,
                payload={
                    "kind": resource.kind,
                    "namespace": resource.namespace,
                    "name": resource.name,
                    **payload,
                },
            )
        )
