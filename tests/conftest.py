"""Shared fixtures for natsauth tests."""

import pytest
from prometheus_client import CollectorRegistry

from natsauth.config import EngineConfig
from natsauth.controller import ReconciliationEngine
from natsauth.observability import ReconcileMetrics
from natsauth.resources import ResourceRegistry
from natsauth.storage import CredentialStore, MemoryStorageProvider, StorageConfig


@pytest.fixture
async def provider():
    """Connected in-memory storage provider."""
    provider = MemoryStorageProvider(StorageConfig(backend="memory"))
    await provider.connect()
    yield provider
    await provider.disconnect()


@pytest.fixture
def store(provider):
    return CredentialStore(provider)


@pytest.fixture
def registry():
    return ResourceRegistry()


@pytest.fixture
def collector():
    """Isolated Prometheus registry so engines do not collide."""
    return CollectorRegistry()


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def engine(registry, store, engine_config, collector):
    return ReconciliationEngine(registry, store, engine_config, ReconcileMetrics(collector))
