"""
Credential Store.

Reads and writes operator, account and user credential records, plus the
aggregate server configuration record, on top of a storage provider. Records
are addressed by namespace and name, mirroring managed secrets.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, Sequence

from natsauth.constants import (
    ACCOUNT_RECORD_SUFFIX,
    DEFAULT_NAMESPACE,
    OPERATOR_RECORD_SUFFIX,
    USER_RECORD_SUFFIX,
)
from natsauth.exceptions import DependencyNotReadyError
from natsauth.resources.models import SecretRef
from natsauth.storage.provider import AbstractStorageProvider, StoredRecord

logger = logging.getLogger(__name__)


class RecordKind(str, Enum):
    OPERATOR = "operator"
    ACCOUNT = "account"
    USER = "user"
    AGGREGATE = "aggregate"
    SECRET = "secret"


def operator_record_name(auth_config_name: str) -> str:
    return f"{auth_config_name}{OPERATOR_RECORD_SUFFIX}"


def account_record_name(account_name: str) -> str:
    return f"{account_name}{ACCOUNT_RECORD_SUFFIX}"


def user_record_name(user_name: str) -> str:
    return f"{user_name}{USER_RECORD_SUFFIX}"


class CredentialStore:
    """
    Versioned credential records.

    Writes are conditional: a create fails if the record already exists and
    an update fails if the record changed since it was read. Both surface as
    ``StoreConflictError`` so the caller can re-read and retry.
    """

    def __init__(self, provider: AbstractStorageProvider):
        self.provider = provider

    @staticmethod
    def record_key(name: str, namespace: str = DEFAULT_NAMESPACE) -> str:
        return f"{namespace}/{name}"

    async def get(
        self,
        kind: RecordKind,
        name: str,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> Optional[StoredRecord]:
        """Read a record, or None if it does not exist."""
        return await self.provider.get(self.record_key(name, namespace))

    async def put(
        self,
        kind: RecordKind,
        name: str,
        data: dict[str, str],
        expected: Optional[StoredRecord] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> StoredRecord:
        """Create or replace a record.

        Args:
            kind: Record kind (for logging).
            name: Record name.
            data: Full record contents.
            expected: The record as last read. None creates a new record;
                otherwise the update only succeeds if the stored version
                still matches.
            namespace: Record namespace.

        Raises:
            StoreConflictError: On concurrent modification.
        """
        key = self.record_key(name, namespace)
        if expected is None:
            record = await self.provider.create(key, data)
            logger.info("Created %s record %s", kind.value, key)
        else:
            record = await self.provider.update(key, data, expected.resource_version)
            logger.info("Updated %s record %s", kind.value, key)
        return record

    async def write_if_changed(
        self,
        kind: RecordKind,
        name: str,
        data: dict[str, str],
        existing: Optional[StoredRecord] = None,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> tuple[StoredRecord, bool]:
        """Write *data* unless *existing* already holds exactly that.

        Returns:
            The current record and whether a write happened.
        """
        if existing is not None and existing.data == data:
            return existing, False
        record = await self.put(kind, name, data, expected=existing, namespace=namespace)
        return record, True

    async def delete(
        self,
        kind: RecordKind,
        name: str,
        namespace: str = DEFAULT_NAMESPACE,
    ) -> bool:
        removed = await self.provider.delete(self.record_key(name, namespace))
        if removed:
            logger.info("Deleted %s record %s/%s", kind.value, namespace, name)
        return removed

    async def read_external(
        self,
        ref: SecretRef,
        keys: Sequence[str],
        namespace: str = DEFAULT_NAMESPACE,
    ) -> str:
        """Read one value from an externally managed secret.

        ``ref.key`` is tried first when set, then each of *keys* in order;
        the first non-empty value wins.

        Raises:
            DependencyNotReadyError: If the secret or every candidate key is
                missing.
        """
        ref_namespace = ref.namespace or namespace
        record = await self.get(RecordKind.SECRET, ref.name, ref_namespace)
        if record is None:
            raise DependencyNotReadyError(f"Secret {ref_namespace}/{ref.name} not found")

        candidates = ([ref.key] if ref.key else []) + list(keys)
        for key in candidates:
            value = record.data.get(key)
            if value:
                return value
        raise DependencyNotReadyError(
            f"Secret {ref_namespace}/{ref.name} has none of the keys {', '.join(candidates)}"
        )
