"""
Token encoding and signing.

Tokens are ``header.claims.signature`` with every part base64url-encoded
without padding. The header is fixed to ``{"typ":"JWT","alg":"ed25519-nkey"}``
and the signature covers the ASCII bytes of ``header.claims``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
from typing import Any

from cryptography.hazmat.primitives import hashes

from natsauth.exceptions import SigningError
from natsauth.identity.keypair import KeyPair, verify_signature
from natsauth.identity.nkeys import is_valid_public_key
from natsauth.jwt.claims import Claims

logger = logging.getLogger(__name__)

ALGORITHM = "ed25519-nkey"
HEADER = {"typ": "JWT", "alg": ALGORITHM}
_ACCEPTED_ALGORITHMS = (ALGORITHM, "ed25519")


def _base64url_encode(data: bytes) -> str:
    """Encode bytes as base64url without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _base64url_decode(s: str) -> bytes:
    """Decode base64url string without padding."""
    padding = 4 - len(s) % 4
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)


def _serialize(document: dict[str, Any]) -> bytes:
    return json.dumps(document, separators=(",", ":")).encode("utf-8")


def _claims_id(payload: dict[str, Any]) -> str:
    """Hash the claims (with an empty id) into the token's ``jti``."""
    digest = hashes.Hash(hashes.SHA512_256())
    digest.update(_serialize({**payload, "jti": ""}))
    return base64.b32encode(digest.finalize()).decode("ascii").rstrip("=")


def sign(claims: Claims, keypair: KeyPair) -> str:
    """Sign *claims* with *keypair* and return the encoded token.

    The issuer is always set to the signing key's public key, overwriting
    whatever the claims carried. The issue time and claims id are stamped on
    the claims object as well.

    Args:
        claims: Operator, account or user claims.
        keypair: The signing key. Operators sign themselves and accounts,
            accounts sign users.

    Returns:
        The encoded token.

    Raises:
        SigningError: If the key kind cannot sign this claims type.
    """
    if keypair.kind is not claims.signer_kind:
        raise SigningError(
            f"{claims.claim_type} claims must be signed by an {claims.signer_kind.name.lower()} "
            f"key, got {keypair.kind.name.lower()} key"
        )

    claims.issuer = keypair.public_key
    claims.issued_at = int(time.time())
    claims.jti = ""
    claims.jti = _claims_id(claims.to_payload())

    signing_input = ".".join(
        (
            _base64url_encode(_serialize(HEADER)),
            _base64url_encode(_serialize(claims.to_payload())),
        )
    )
    signature = keypair.sign(signing_input.encode("ascii"))
    logger.debug("Signed %s claims for %s", claims.claim_type, claims.subject)
    return f"{signing_input}.{_base64url_encode(signature)}"


def decode(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """Decode a token without verifying it.

    Returns:
        The ``(header, claims)`` pair.

    Raises:
        SigningError: If the token is not well formed.
    """
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise SigningError("Token must have three dot-separated parts")
    try:
        header = json.loads(_base64url_decode(parts[0]))
        payload = json.loads(_base64url_decode(parts[1]))
    except (binascii.Error, ValueError) as exc:
        raise SigningError(f"Token is not decodable: {exc}") from exc
    if not isinstance(header, dict) or not isinstance(payload, dict):
        raise SigningError("Token header and claims must be JSON objects")
    return header, payload


def verify(token: str) -> dict[str, Any]:
    """Verify a token's signature against its issuer.

    Returns:
        The decoded claims.

    Raises:
        SigningError: If the token is malformed, uses an unknown algorithm,
            or the signature does not match the issuer.
    """
    header, payload = decode(token)
    if header.get("alg") not in _ACCEPTED_ALGORITHMS:
        raise SigningError(f"Unsupported token algorithm: {header.get('alg')!r}")

    issuer = payload.get("iss", "")
    if not is_valid_public_key(issuer):
        raise SigningError(f"Token issuer is not a valid public key: {issuer!r}")

    signing_input, _, encoded_signature = token.strip().rpartition(".")
    try:
        signature = _base64url_decode(encoded_signature)
    except (binascii.Error, ValueError) as exc:
        raise SigningError(f"Token signature is not decodable: {exc}") from exc

    if not verify_signature(issuer, signing_input.encode("ascii"), signature):
        raise SigningError(f"Token signature does not match issuer {issuer}")
    return payload


def issuer_of(token: str) -> str:
    """Return the ``iss`` claim of a token without verifying it."""
    _, payload = decode(token)
    return payload.get("iss", "")
