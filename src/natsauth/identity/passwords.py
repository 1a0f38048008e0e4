"""Random bearer tokens and passwords for flat-mode users."""

import base64
import secrets

from natsauth.constants import PASSWORD_BYTES, TOKEN_BYTES


def generate_token(length: int = TOKEN_BYTES) -> str:
    """Return *length* random bytes as URL-safe base64 (with padding)."""
    if length <= 0:
        length = TOKEN_BYTES
    return base64.urlsafe_b64encode(secrets.token_bytes(length)).decode("ascii")


def generate_password() -> str:
    """Return a random 32-character password."""
    return generate_token(PASSWORD_BYTES)
