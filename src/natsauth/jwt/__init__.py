"""Claims building and token signing for the credential hierarchy."""

from .claims import (
    AccountClaims,
    Claims,
    OperatorClaims,
    OperatorLimits,
    Permission,
    UserClaims,
    build_account_claims,
    build_operator_claims,
    build_user_claims,
)
from .signer import decode, issuer_of, sign, verify

__all__ = [
    "Claims",
    "OperatorClaims",
    "AccountClaims",
    "UserClaims",
    "OperatorLimits",
    "Permission",
    "build_operator_claims",
    "build_account_claims",
    "build_user_claims",
    "sign",
    "decode",
    "verify",
    "issuer_of",
]
