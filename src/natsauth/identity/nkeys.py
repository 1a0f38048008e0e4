"""
NKEY encoding for Ed25519 key material.

NATS identifies operators, accounts and users by Ed25519 public keys wrapped
in a typed, checksummed base32 encoding. Seeds use the same envelope with a
two-byte header that records both "this is a seed" and the key type.
"""

from __future__ import annotations

import base64
import binascii
from enum import Enum

from natsauth.exceptions import IdentityError, InvalidSeedError

PREFIX_BYTE_SEED = 18 << 3  # 'S'
PREFIX_BYTE_PRIVATE = 15 << 3  # 'P'

_CRC16_TABLE: list[int] = []


class KeyKind(str, Enum):
    """Typed NKEY prefixes. The value is the leading letter of a public key."""

    OPERATOR = "O"
    ACCOUNT = "A"
    USER = "U"
    SERVER = "N"
    CLUSTER = "C"

    @property
    def prefix_byte(self) -> int:
        return _PREFIX_BYTES[self]

    @classmethod
    def from_prefix_byte(cls, value: int) -> "KeyKind":
        for kind, prefix in _PREFIX_BYTES.items():
            if prefix == value:
                return kind
        raise IdentityError(f"Unknown nkey prefix byte: {value}")


_PREFIX_BYTES = {
    KeyKind.OPERATOR: 14 << 3,
    KeyKind.ACCOUNT: 0,
    KeyKind.USER: 20 << 3,
    KeyKind.SERVER: 13 << 3,
    KeyKind.CLUSTER: 2 << 3,
}


def _build_crc16_table() -> list[int]:
    table = []
    for i in range(256):
        crc = i << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
        table.append(crc)
    return table


def crc16(data: bytes) -> int:
    """CRC-16/XMODEM (polynomial 0x1021, initial value 0)."""
    if not _CRC16_TABLE:
        _CRC16_TABLE.extend(_build_crc16_table())
    crc = 0
    for byte in data:
        crc = ((crc << 8) & 0xFFFF) ^ _CRC16_TABLE[((crc >> 8) ^ byte) & 0xFF]
    return crc


def _b32encode(data: bytes) -> str:
    """Standard base32 without padding."""
    return base64.b32encode(data).rstrip(b"=").decode("ascii")


def _b32decode(value: str) -> bytes:
    padding = -len(value) % 8
    return base64.b32decode(value + "=" * padding)


def _with_checksum(raw: bytes) -> bytes:
    return raw + crc16(raw).to_bytes(2, "little")


def _strip_checksum(data: bytes) -> bytes:
    if len(data) < 3:
        raise IdentityError("Encoded nkey is too short")
    raw, checksum = data[:-2], data[-2:]
    if crc16(raw) != int.from_bytes(checksum, "little"):
        raise IdentityError("Invalid nkey checksum")
    return raw


def encode_public_key(kind: KeyKind, raw_public: bytes) -> str:
    """Encode a raw 32-byte Ed25519 public key as a typed nkey."""
    if len(raw_public) != 32:
        raise IdentityError(f"Ed25519 public key must be 32 bytes, got {len(raw_public)}")
    return _b32encode(_with_checksum(bytes([kind.prefix_byte]) + raw_public))


def decode_public_key(value: str, kind: KeyKind | None = None) -> tuple[KeyKind, bytes]:
    """Decode a typed public nkey into its kind and raw key bytes.

    Raises:
        IdentityError: If the value is not a valid public nkey, or is not of
            the expected ``kind``.
    """
    try:
        raw = _strip_checksum(_b32decode(value))
    except (binascii.Error, ValueError) as exc:
        raise IdentityError(f"Invalid public nkey encoding: {exc}") from exc
    if len(raw) != 33:
        raise IdentityError("Invalid public nkey length")
    decoded_kind = KeyKind.from_prefix_byte(raw[0])
    if kind is not None and decoded_kind is not kind:
        raise IdentityError(
            f"Expected {kind.name.lower()} public key, got {decoded_kind.name.lower()}"
        )
    return decoded_kind, raw[1:]


def is_valid_public_key(value: str, kind: KeyKind | None = None) -> bool:
    """Return True if *value* is a well-formed public nkey (of *kind*, if given)."""
    try:
        decode_public_key(value, kind)
    except IdentityError:
        return False
    return True


def encode_seed(kind: KeyKind, raw_seed: bytes) -> str:
    """Encode a raw 32-byte Ed25519 seed as a typed nkey seed (``S`` + kind)."""
    if len(raw_seed) != 32:
        raise InvalidSeedError(f"Ed25519 seed must be 32 bytes, got {len(raw_seed)}")
    prefix = kind.prefix_byte
    header = bytes([PREFIX_BYTE_SEED | (prefix >> 5), (prefix & 31) << 3])
    return _b32encode(_with_checksum(header + raw_seed))


def decode_seed(seed: str | bytes) -> tuple[KeyKind, bytes]:
    """Decode a typed nkey seed into its kind and raw 32-byte seed.

    Raises:
        InvalidSeedError: If the seed is malformed or fails its checksum.
    """
    if isinstance(seed, bytes):
        seed = seed.decode("ascii", errors="replace")
    seed = seed.strip()
    if not seed:
        raise InvalidSeedError("Seed is empty")

    try:
        raw = _strip_checksum(_b32decode(seed))
    except (binascii.Error, ValueError, IdentityError) as exc:
        raise InvalidSeedError(f"Invalid seed encoding: {exc}") from exc

    if len(raw) != 34:
        raise InvalidSeedError("Invalid seed length")
    if raw[0] & 248 != PREFIX_BYTE_SEED:
        raise InvalidSeedError("Value is not a seed")

    prefix = ((raw[0] & 7) << 5) | ((raw[1] & 248) >> 3)
    try:
        kind = KeyKind.from_prefix_byte(prefix)
    except IdentityError as exc:
        raise InvalidSeedError(str(exc)) from exc
    return kind, raw[2:]
