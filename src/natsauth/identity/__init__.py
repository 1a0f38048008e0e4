"""
Identity layer

NKEY-encoded Ed25519 keypairs for the operator → account → user hierarchy:
- Typed, checksummed public keys and seeds
- Deterministic restore from seed
- Credentials files for clients
"""

from .nkeys import KeyKind, decode_public_key, decode_seed, is_valid_public_key
from .keypair import KeyPair, obtain_keypair, public_key_from_seed, verify_signature
from .creds import generate_creds_file, parse_creds_file
from .passwords import generate_password, generate_token

__all__ = [
    "KeyKind",
    "KeyPair",
    "obtain_keypair",
    "public_key_from_seed",
    "verify_signature",
    "decode_public_key",
    "decode_seed",
    "is_valid_public_key",
    "generate_creds_file",
    "parse_creds_file",
    "generate_password",
    "generate_token",
]
