"""
Redis Storage Provider.

Redis backend with connection pooling and optimistic concurrency. Each record
is one JSON document (fields plus version) under ``<prefix>record:<name>``;
conditional writes use WATCH/MULTI so a concurrent modification aborts the
transaction instead of overwriting it.
"""

from typing import Optional
import json
import logging

from natsauth.exceptions import StorageError, StoreConflictError

from .provider import AbstractStorageProvider, StorageConfig, StoredRecord

logger = logging.getLogger(__name__)


class RedisStorageProvider(AbstractStorageProvider):
    """
    Redis storage provider.

    Features:
    - Connection pooling
    - Versioned records with WATCH/MULTI conditional writes
    - Prefix listing via SCAN

    Requires: redis[asyncio] package
    """

    def __init__(self, config: StorageConfig, client=None):
        """Initialize Redis storage.

        Args:
            config: Storage configuration.
            client: An already-constructed ``redis.asyncio.Redis`` client
                (must use ``decode_responses=True``). When given, ``connect``
                only pings it.
        """
        super().__init__(config)
        self._client = client
        self._pool = None

    def _key(self, name: str) -> str:
        return f"{self.config.key_prefix}record:{name}"

    def _require_client(self):
        if self._client is None:
            raise StorageError("RedisStorageProvider is not connected")
        return self._client

    async def connect(self) -> None:
        """Establish connection to Redis."""
        if self._client is None:
            try:
                import redis.asyncio as aioredis
            except ImportError:
                raise ImportError(
                    "redis package is required for RedisStorageProvider. "
                    "Install with: pip install natsauth[redis]"
                )

            self._pool = aioredis.ConnectionPool(
                host=self.config.redis_host,
                port=self.config.redis_port,
                db=self.config.redis_db,
                password=self.config.redis_password,
                ssl=self.config.redis_ssl,
                max_connections=self.config.pool_size,
                socket_timeout=self.config.timeout_seconds,
                socket_connect_timeout=self.config.timeout_seconds,
                decode_responses=True,
            )
            self._client = aioredis.Redis(connection_pool=self._pool)

        # Test connection
        await self._client.ping()

    async def disconnect(self) -> None:
        """Close connection to Redis."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    async def health_check(self) -> bool:
        """Check if Redis is healthy."""
        try:
            if self._client:
                await self._client.ping()
                return True
        except Exception:
            logger.debug("Redis health check failed", exc_info=True)
        return False

    @staticmethod
    def _decode(name: str, raw: Optional[str]) -> Optional[StoredRecord]:
        if raw is None:
            return None
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StorageError(f"Record {name} is corrupt: {exc}") from exc
        return StoredRecord(
            name=name,
            data=document.get("data", {}),
            resource_version=document.get("version", 0),
        )

    @staticmethod
    def _encode(data: dict[str, str], version: int) -> str:
        return json.dumps({"data": data, "version": version}, sort_keys=True)

    async def get(self, name: str) -> Optional[StoredRecord]:
        """Get a record by name."""
        client = self._require_client()
        return self._decode(name, await client.get(self._key(name)))

    async def create(self, name: str, data: dict[str, str]) -> StoredRecord:
        """Create a record; SET NX makes creation atomic."""
        client = self._require_client()
        created = await client.set(self._key(name), self._encode(dict(data), 1), nx=True)
        if not created:
            raise StoreConflictError(f"Record {name} already exists")
        return StoredRecord(name=name, data=dict(data), resource_version=1)

    async def update(self, name: str, data: dict[str, str], expected_version: int) -> StoredRecord:
        """Replace a record's data if it is still at *expected_version*."""
        from redis.exceptions import WatchError

        client = self._require_client()
        key = self._key(name)
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = self._decode(name, await pipe.get(key))
                if current is None:
                    raise StoreConflictError(f"Record {name} no longer exists")
                if current.resource_version != expected_version:
                    raise StoreConflictError(
                        f"Record {name} was modified (expected version {expected_version}, "
                        f"found {current.resource_version})"
                    )
                version = current.resource_version + 1
                pipe.multi()
                pipe.set(key, self._encode(dict(data), version))
                await pipe.execute()
        except WatchError as exc:
            raise StoreConflictError(f"Record {name} was modified concurrently") from exc
        return StoredRecord(name=name, data=dict(data), resource_version=version)

    async def delete(self, name: str) -> bool:
        """Delete a record."""
        client = self._require_client()
        result = await client.delete(self._key(name))
        return result > 0

    async def list(self, prefix: str = "") -> list[str]:
        """List record names with *prefix*."""
        client = self._require_client()
        base = self._key("")
        names = [key[len(base):] async for key in client.scan_iter(match=f"{base}{prefix}*")]
        return sorted(names)
