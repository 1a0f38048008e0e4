"""
Storage providers for natsauth.

Provides the record store interface, its implementations, and the credential
store built on top of them.
"""

from natsauth.exceptions import StorageError

from .provider import AbstractStorageProvider, StorageConfig, StoredRecord
from .memory_provider import MemoryStorageProvider
from .redis_provider import RedisStorageProvider
from .credentials import (
    CredentialStore,
    RecordKind,
    account_record_name,
    operator_record_name,
    user_record_name,
)


def create_provider(config: StorageConfig) -> AbstractStorageProvider:
    """Build the provider selected by ``config.backend``."""
    if config.backend == "memory":
        return MemoryStorageProvider(config)
    if config.backend == "redis":
        return RedisStorageProvider(config)
    raise StorageError(f"Unknown storage backend: {config.backend!r}")


__all__ = [
    "AbstractStorageProvider",
    "StorageConfig",
    "StoredRecord",
    "MemoryStorageProvider",
    "RedisStorageProvider",
    "CredentialStore",
    "RecordKind",
    "account_record_name",
    "operator_record_name",
    "user_record_name",
    "create_provider",
]
