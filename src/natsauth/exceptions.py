# Copyright (c) natsauth Contributors. All rights reserved.
# Licensed under the MIT License.
"""Centralized exception hierarchy for natsauth.

All natsauth exceptions inherit from NatsAuthError. Each class carries a
machine-readable ``reason`` that the reconciliation engine copies into the
status conditions of the entity that failed.
"""


class NatsAuthError(Exception):
    """Base exception for all natsauth errors."""

    reason = "ReconcileError"


class IdentityError(NatsAuthError):
    """Errors related to key material (seeds, public keys)."""

    reason = "IdentityError"


class InvalidSeedError(IdentityError):
    """A seed is malformed, fails its checksum, or has the wrong key type."""

    reason = "InvalidSeed"


class SigningError(NatsAuthError):
    """A token could not be signed, decoded, or verified."""

    reason = "SigningError"


class DependencyNotReadyError(NatsAuthError):
    """A parent entity does not exist yet or has no persisted public id."""

    reason = "DependencyNotReady"


class UnsupportedConfigurationError(NatsAuthError):
    """Declared state requests a combination that is not implemented."""

    reason = "UnsupportedConfiguration"


class ResourceValidationError(NatsAuthError):
    """Declared state fails schema constraints."""

    reason = "ValidationError"


class StorageError(NatsAuthError):
    """Errors related to storage backend operations."""

    reason = "StorageError"


class StoreConflictError(StorageError):
    """The store detected a concurrent modification; re-read and retry."""

    reason = "StoreConflict"


__all__ = [
    "NatsAuthError",
    "IdentityError",
    "InvalidSeedError",
    "SigningError",
    "DependencyNotReadyError",
    "UnsupportedConfigurationError",
    "ResourceValidationError",
    "StorageError",
    "StoreConflictError",
]
