"""
Ed25519 signing keypairs for the operator, account and user hierarchy.

A keypair is always reconstructible from its seed; the public key derived
from a seed never changes, which is what every consistency check in the
reconcilers relies on.
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from natsauth.exceptions import IdentityError, InvalidSeedError, SigningError
from natsauth.identity.nkeys import (
    KeyKind,
    decode_public_key,
    decode_seed,
    encode_public_key,
    encode_seed,
)

logger = logging.getLogger(__name__)


class KeyPair:
    """An Ed25519 keypair bound to a NKEY kind.

    Example:
        >>> kp = KeyPair.create(KeyKind.ACCOUNT)
        >>> restored = KeyPair.from_seed(kp.seed)
        >>> restored.public_key == kp.public_key
        True
    """

    def __init__(self, kind: KeyKind, private_key: ed25519.Ed25519PrivateKey) -> None:
        self._kind = kind
        self._private_key = private_key
        raw_public = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self._public_key = encode_public_key(kind, raw_public)

    @classmethod
    def create(cls, kind: KeyKind) -> "KeyPair":
        """Generate a fresh keypair from 32 cryptographically random bytes."""
        raw_seed = os.urandom(32)
        keypair = cls(kind, ed25519.Ed25519PrivateKey.from_private_bytes(raw_seed))
        logger.info("Generated new %s keypair %s", kind.name.lower(), keypair.public_key)
        return keypair

    @classmethod
    def from_seed(cls, seed: Union[str, bytes]) -> "KeyPair":
        """Restore a keypair from an encoded nkey seed.

        Raises:
            InvalidSeedError: If the seed is malformed.
        """
        kind, raw_seed = decode_seed(seed)
        try:
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(raw_seed)
        except ValueError as exc:
            raise InvalidSeedError(f"Seed does not hold a valid Ed25519 key: {exc}") from exc
        return cls(kind, private_key)

    @property
    def kind(self) -> KeyKind:
        return self._kind

    @property
    def public_key(self) -> str:
        """The encoded public nkey (the stable public id)."""
        return self._public_key

    @property
    def seed(self) -> str:
        """The encoded nkey seed (secret)."""
        raw_seed = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return encode_seed(self._kind, raw_seed)

    def sign(self, data: bytes) -> bytes:
        """Sign *data* with the private key.

        Raises:
            SigningError: If the signature cannot be produced.
        """
        try:
            return self._private_key.sign(data)
        except Exception as exc:
            raise SigningError(f"Failed to sign with {self._public_key}: {exc}") from exc

    def verify(self, data: bytes, signature: bytes) -> bool:
        """Verify a signature made by this keypair."""
        return verify_signature(self._public_key, data, signature)

    def __repr__(self) -> str:
        return f"KeyPair(kind={self._kind.name}, public_key={self._public_key!r})"


def verify_signature(public_key: str, data: bytes, signature: bytes) -> bool:
    """Verify an Ed25519 signature against an encoded public nkey.

    Returns:
        ``True`` if valid, ``False`` otherwise (including malformed keys).
    """
    try:
        _, raw_public = decode_public_key(public_key)
        ed25519.Ed25519PublicKey.from_public_bytes(raw_public).verify(signature, data)
        return True
    except (IdentityError, InvalidSignature, ValueError):
        return False


def obtain_keypair(kind: KeyKind, seed: Optional[Union[str, bytes]] = None) -> KeyPair:
    """Restore the keypair held by *seed*, or generate a new one if no seed is given.

    Args:
        kind: The key type expected for this hierarchy level.
        seed: An existing encoded seed. Empty values count as absent.

    Returns:
        The restored or generated KeyPair.

    Raises:
        InvalidSeedError: If the seed is malformed or belongs to a different kind.
    """
    if not seed:
        return KeyPair.create(kind)

    keypair = KeyPair.from_seed(seed)
    if keypair.kind is not kind:
        raise InvalidSeedError(
            f"Expected {kind.name.lower()} seed, got {keypair.kind.name.lower()} seed"
        )
    return keypair


def public_key_from_seed(seed: Union[str, bytes]) -> Optional[str]:
    """Return the public key derivable from *seed*, or None if it is unusable."""
    try:
        return KeyPair.from_seed(seed).public_key
    except InvalidSeedError:
        return None
