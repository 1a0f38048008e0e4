"""
Abstract Storage Provider Interface.

Defines the contract that all record stores must implement. A record is a
named mapping of string fields (a managed secret) plus a resource version
used for optimistic concurrency.
"""

from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, Field


class StorageConfig(BaseModel):
    """Configuration for storage provider."""

    backend: str = Field(default="memory", description="Storage backend type (memory or redis)")
    key_prefix: str = Field(default="natsauth:", description="Prefix for every stored key")
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    timeout_seconds: int = Field(default=30, ge=1, le=300, description="Operation timeout")

    # Redis-specific
    redis_host: Optional[str] = Field(default="localhost")
    redis_port: int = Field(default=6379, ge=1, le=65535)
    redis_db: int = Field(default=0, ge=0)
    redis_password: Optional[str] = None
    redis_ssl: bool = False


class StoredRecord(BaseModel):
    """A persisted record and the version it was read at."""

    name: str
    data: dict[str, str] = Field(default_factory=dict)
    resource_version: int = 0


class AbstractStorageProvider(ABC):
    """
    Abstract storage provider.

    Supports:
    - Versioned record reads
    - Create (fails if the record exists)
    - Update guarded by the expected version
    - Delete and prefix listing

    Every write bumps the record's version. Implementations raise
    ``StoreConflictError`` when a write loses a race.
    """

    def __init__(self, config: StorageConfig):
        """Initialize storage provider with configuration."""
        self.config = config

    @abstractmethod
    async def connect(self) -> None:
        """Establish connection to storage backend."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close connection to storage backend."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if storage backend is healthy."""
        pass

    @abstractmethod
    async def get(self, name: str) -> Optional[StoredRecord]:
        """Get a record by name, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(self, name: str, data: dict[str, str]) -> StoredRecord:
        """Create a record.

        Raises:
            StoreConflictError: If the record already exists.
        """
        pass

    @abstractmethod
    async def update(self, name: str, data: dict[str, str], expected_version: int) -> StoredRecord:
        """Replace a record's data.

        Raises:
            StoreConflictError: If the record is missing or its version is not
                ``expected_version``.
        """
        pass

    @abstractmethod
    async def delete(self, name: str) -> bool:
        """Delete a record. Returns True if it existed."""
        pass

    @abstractmethod
    async def list(self, prefix: str = "") -> list[str]:
        """List record names starting with *prefix*, sorted."""
        pass
