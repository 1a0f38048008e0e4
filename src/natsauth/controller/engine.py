"""
Reconciliation engine.

Dispatches resource keys to the reconciler of their kind, persists the
resulting status, and turns failures into retry delays:

- success: requeue after ``resync_interval`` (drift correction)
- DependencyNotReadyError: requeue after ``dependency_retry``
- StoreConflictError: requeue immediately (fresh read)
- any other error: requeue after ``error_retry``

Registry events drive the queue: every applied or touched resource is
queued, and deleting an account or user queues its AuthConfig so the
aggregate drops it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from prometheus_client import CollectorRegistry

from natsauth.config import EngineConfig
from natsauth.controller.account import AccountReconciler
from natsauth.controller.authconfig import AuthConfigReconciler
from natsauth.controller.base import Outcome, Reconciler, ReconcileResult
from natsauth.controller.scheduler import WorkQueue
from natsauth.controller.user import UserReconciler
from natsauth.events import EVENT_RESOURCE_DELETED, Event
from natsauth.exceptions import DependencyNotReadyError, NatsAuthError, StoreConflictError
from natsauth.observability.metrics import ReconcileMetrics
from natsauth.resources.models import (
    Condition,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    Resource,
    ResourceKey,
    ResourceState,
)
from natsauth.resources.registry import ResourceRegistry
from natsauth.storage.credentials import CredentialStore

logger = logging.getLogger(__name__)

CONDITION_READY = "Ready"


class ReconciliationEngine:
    """
    Drives reconcilers from a work queue.

    Reconciliations of different resources may run concurrently; the same
    resource key is never reconciled by two workers at once.

    Example:
        >>> engine = ReconciliationEngine(registry, CredentialStore(MemoryStorageProvider()))
        >>> await registry.apply(auth_config)
        >>> await engine.run_until_idle()
    """

    def __init__(
        self,
        registry: ResourceRegistry,
        store: CredentialStore,
        config: Optional[EngineConfig] = None,
        metrics: Optional[ReconcileMetrics] = None,
    ):
        self.registry = registry
        self.store = store
        self.config = config or EngineConfig()
        self.metrics = metrics or ReconcileMetrics(CollectorRegistry())
        self.queue = WorkQueue()
        self._locks: defaultdict[ResourceKey, asyncio.Lock] = defaultdict(asyncio.Lock)

        reconcilers: list[Reconciler] = [
            AuthConfigReconciler(registry, store, self.config, self.metrics),
            AccountReconciler(registry, store, self.config, self.metrics),
            UserReconciler(registry, store, self.config, self.metrics),
        ]
        self._reconcilers = {r.resource_type.kind: r for r in reconcilers}

        self.registry.event_bus.subscribe("resource.*", self._on_resource_event)

    # -- events --------------------------------------------------------------

    def _on_resource_event(self, event: Event) -> None:
        payload = event.payload
        key = ResourceKey(payload["kind"], payload["namespace"], payload["name"])

        if event.event_type == EVENT_RESOURCE_DELETED:
            self._locks.pop(key, None)
            if key.kind in (NatsAccount.kind, NatsUser.kind) and payload.get("auth_config"):
                self.queue.add(
                    ResourceKey(NatsAuthConfig.kind, payload["auth_config_namespace"], payload["auth_config"])
                )
            return

        self.queue.add(key)

    async def enqueue_all(self) -> int:
        """Queue every declared resource (startup resync)."""
        count = 0
        for kind in (NatsAuthConfig, NatsAccount, NatsUser):
            for resource in await self.registry.list(kind):
                self.queue.add(resource.key)
                count += 1
        return count

    # -- reconciliation ------------------------------------------------------

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """Reconcile one resource and persist its status.

        Never raises for reconciliation failures; they are recorded in the
        resource status and reflected in the returned requeue delay.
        """
        async with self._locks[key]:
            return await self._reconcile_locked(key)

    async def _reconcile_locked(self, key: ResourceKey) -> ReconcileResult:
        resource = await self.registry.get(key.kind, key.name, key.namespace)
        if resource is None:
            logger.debug("%s no longer exists, nothing to do", key)
            return ReconcileResult()

        reconciler = self._reconcilers[key.kind]
        started = time.monotonic()

        outcome: Optional[Outcome] = None
        try:
            outcome = await reconciler.reconcile(resource)
        except StoreConflictError as exc:
            logger.info("Conflict while reconciling %s, retrying: %s", key, exc)
            self._mark_failed(resource, exc, ResourceState.ERROR)
            result = ReconcileResult(requeue_after=0.0, outcome="conflict")
        except DependencyNotReadyError as exc:
            logger.info("Dependency of %s not ready: %s", key, exc)
            self._mark_failed(resource, exc, ResourceState.PENDING)
            result = ReconcileResult(requeue_after=self.config.dependency_retry, outcome="requeue")
        except NatsAuthError as exc:
            logger.warning("Failed to reconcile %s: %s", key, exc)
            self._mark_failed(resource, exc, ResourceState.ERROR)
            result = ReconcileResult(requeue_after=self.config.error_retry, outcome="error")
        except Exception as exc:
            logger.exception("Unexpected error reconciling %s", key)
            self._mark_failed(resource, exc, ResourceState.ERROR)
            result = ReconcileResult(requeue_after=self.config.error_retry, outcome="error")
        else:
            self._mark_ready(resource, outcome.message)
            result = ReconcileResult(requeue_after=self.config.resync_interval)

        try:
            await self.registry.update_status(resource)
        except StoreConflictError as exc:
            logger.debug("Status of %s changed underneath, retrying: %s", key, exc)
            result = ReconcileResult(requeue_after=0.0, outcome="conflict")
        else:
            if outcome is not None:
                await self._deliver(outcome)

        self.metrics.record_reconcile(key.kind, result.outcome, time.monotonic() - started)
        return result

    async def _deliver(self, outcome: Outcome) -> None:
        for target, annotation in outcome.notifications:
            if not await self.registry.touch(target, annotation):
                logger.debug("Cannot notify %s, it no longer exists", target)

    @staticmethod
    def _mark_ready(resource: Resource, message: str) -> None:
        status = resource.status
        status.state = ResourceState.READY
        status.reason = message
        status.observed_generation = resource.metadata.generation
        status.last_reconciled = datetime.now(timezone.utc)
        status.set_condition(
            Condition(type=CONDITION_READY, status="True", reason="Reconciled", message=message)
        )

    @staticmethod
    def _mark_failed(resource: Resource, exc: Exception, state: ResourceState) -> None:
        reason = exc.reason if isinstance(exc, NatsAuthError) else NatsAuthError.reason
        status = resource.status
        status.state = state
        status.reason = str(exc)
        status.observed_generation = resource.metadata.generation
        status.last_reconciled = datetime.now(timezone.utc)
        status.set_condition(
            Condition(type=CONDITION_READY, status="False", reason=reason, message=str(exc))
        )

    # -- workers -------------------------------------------------------------

    def _requeue(self, key: ResourceKey, result: ReconcileResult) -> None:
        if result.requeue_after is None:
            return
        self.queue.add_after(key, result.requeue_after)

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker %d started", worker_id)
        while True:
            key = await self.queue.get()
            try:
                result = await self.reconcile(key)
            finally:
                self.queue.done(key)
            self._requeue(key, result)

    async def run(self, workers: Optional[int] = None) -> None:
        """Run workers until cancelled."""
        count = workers or self.config.workers
        await self.enqueue_all()
        tasks = [asyncio.create_task(self._worker(i)) for i in range(count)]
        logger.info("Reconciliation engine running with %d worker(s)", count)
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self.queue.shutdown()
            logger.info("Reconciliation engine stopped")

    async def run_until_idle(self, max_iterations: int = 1000) -> int:
        """Process queued keys one at a time until the queue is empty.

        Immediate retries are processed; delayed requeues (resync, error and
        dependency retries) are not scheduled, since nothing else would run
        them in a one-shot pass.

        Returns:
            The number of reconciliations performed.

        Raises:
            RuntimeError: If the queue does not drain within *max_iterations*.
        """
        processed = 0
        while len(self.queue):
            if processed >= max_iterations:
                raise RuntimeError(f"Work queue did not drain after {max_iterations} reconciliations")
            key = await self.queue.get()
            try:
                result = await self.reconcile(key)
            finally:
                self.queue.done(key)
            if result.requeue_after == 0:
                self.queue.add(key)
            processed += 1
        return processed
