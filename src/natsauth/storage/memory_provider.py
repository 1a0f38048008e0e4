"""
In-Memory Storage Provider.

Simple in-memory implementation for development and testing.
"""

from typing import Optional
import asyncio

from natsauth.exceptions import StoreConflictError

from .provider import AbstractStorageProvider, StorageConfig, StoredRecord


class MemoryStorageProvider(AbstractStorageProvider):
    """
    In-memory storage provider.

    Uses Python dictionaries for storage. Data is lost on restart.
    Suitable for development and testing only.

    ``writes`` counts every successful create, update and delete, which lets
    tests assert that a reconciliation pass performed no writes.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize in-memory storage."""
        super().__init__(config or StorageConfig())
        self._records: dict[str, StoredRecord] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self.writes = 0

    async def connect(self) -> None:
        """Establish connection (no-op for memory)."""
        self._connected = True

    async def disconnect(self) -> None:
        """Close connection (no-op for memory)."""
        self._connected = False

    async def health_check(self) -> bool:
        """Check if storage is healthy."""
        return self._connected

    async def get(self, name: str) -> Optional[StoredRecord]:
        """Get a record by name."""
        record = self._records.get(name)
        if record is None:
            return None
        return record.model_copy(deep=True)

    async def create(self, name: str, data: dict[str, str]) -> StoredRecord:
        """Create a record."""
        async with self._lock:
            if name in self._records:
                raise StoreConflictError(f"Record {name} already exists")
            record = StoredRecord(name=name, data=dict(data), resource_version=1)
            self._records[name] = record
            self.writes += 1
            return record.model_copy(deep=True)

    async def update(self, name: str, data: dict[str, str], expected_version: int) -> StoredRecord:
        """Replace a record's data if it is still at *expected_version*."""
        async with self._lock:
            current = self._records.get(name)
            if current is None:
                raise StoreConflictError(f"Record {name} no longer exists")
            if current.resource_version != expected_version:
                raise StoreConflictError(
                    f"Record {name} was modified (expected version {expected_version}, "
                    f"found {current.resource_version})"
                )
            record = StoredRecord(
                name=name,
                data=dict(data),
                resource_version=current.resource_version + 1,
            )
            self._records[name] = record
            self.writes += 1
            return record.model_copy(deep=True)

    async def delete(self, name: str) -> bool:
        """Delete a record."""
        async with self._lock:
            if name in self._records:
                del self._records[name]
                self.writes += 1
                return True
            return False

    async def list(self, prefix: str = "") -> list[str]:
        """List record names with *prefix*."""
        return sorted(name for name in self._records if name.startswith(prefix))
