"""
Claims documents for operator, account and user tokens.

Claims follow the NATS JWT v2 layout: registered claims (``jti``, ``iat``,
``iss``, ``name``, ``sub``) plus a ``nats`` section describing the entity.
The builders copy declared limits and permissions verbatim; anything not
declared keeps the broker default (unlimited / unrestricted).
"""

from __future__ import annotations

from typing import Any, ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field

from natsauth.identity.nkeys import KeyKind
from natsauth.resources.models import AccountLimits, Permissions

JWT_VERSION = 2
NO_LIMIT = -1


def _unique(subjects: list[str]) -> list[str]:
    """Drop duplicate subjects, keeping first-seen order."""
    return list(dict.fromkeys(subjects))


class Permission(BaseModel):
    """Allow/deny subject sets for one direction (publish or subscribe)."""

    allow: list[str] = Field(default_factory=list)
    deny: list[str] = Field(default_factory=list)

    def add_allow(self, *subjects: str) -> None:
        self.allow = _unique(self.allow + list(subjects))

    def add_deny(self, *subjects: str) -> None:
        self.deny = _unique(self.deny + list(subjects))

    def to_payload(self) -> dict[str, list[str]]:
        payload: dict[str, list[str]] = {}
        if self.allow:
            payload["allow"] = list(self.allow)
        if self.deny:
            payload["deny"] = list(self.deny)
        return payload


class OperatorLimits(BaseModel):
    """Account limits as they appear in account claims."""

    subs: int = NO_LIMIT
    data: int = NO_LIMIT
    payload: int = NO_LIMIT
    imports: int = NO_LIMIT
    exports: int = NO_LIMIT
    wildcards: bool = True
    conn: int = NO_LIMIT
    leaf: int = NO_LIMIT
    # JetStream is disabled unless storage limits are declared
    mem_storage: int = 0
    disk_storage: int = 0
    streams: int = 0
    consumer: int = 0
    max_ack_pending: int = 0
    mem_max_stream_bytes: int = 0
    disk_max_stream_bytes: int = 0
    max_bytes_required: bool = False

    @property
    def jetstream_enabled(self) -> bool:
        return self.mem_storage != 0 or self.disk_storage != 0


class Claims(BaseModel):
    """Registered claims shared by every token type."""

    model_config = ConfigDict(validate_assignment=True)

    claim_type: ClassVar[str] = ""
    subject_kind: ClassVar[KeyKind]
    signer_kind: ClassVar[KeyKind]

    jti: str = ""
    issued_at: int = 0
    issuer: str = ""
    name: str = ""
    subject: str

    def nats_section(self) -> dict[str, Any]:
        return {}

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON claims object, in NATS field order."""
        nats = self.nats_section()
        nats["type"] = self.claim_type
        nats["version"] = JWT_VERSION
        return {
            "jti": self.jti,
            "iat": self.issued_at,
            "iss": self.issuer,
            "name": self.name,
            "sub": self.subject,
            "nats": nats,
        }


class OperatorClaims(Claims):
    claim_type: ClassVar[str] = "operator"
    subject_kind: ClassVar[KeyKind] = KeyKind.OPERATOR
    signer_kind: ClassVar[KeyKind] = KeyKind.OPERATOR


class AccountClaims(Claims):
    claim_type: ClassVar[str] = "account"
    subject_kind: ClassVar[KeyKind] = KeyKind.ACCOUNT
    signer_kind: ClassVar[KeyKind] = KeyKind.OPERATOR

    description: str = ""
    limits: OperatorLimits = Field(default_factory=OperatorLimits)
    default_pub: Permission = Field(default_factory=Permission)
    default_sub: Permission = Field(default_factory=Permission)

    def nats_section(self) -> dict[str, Any]:
        section: dict[str, Any] = {
            "limits": self.limits.model_dump(),
            "default_permissions": {
                "pub": self.default_pub.to_payload(),
                "sub": self.default_sub.to_payload(),
            },
        }
        if self.description:
            section["description"] = self.description
        return section


class UserClaims(Claims):
    claim_type: ClassVar[str] = "user"
    subject_kind: ClassVar[KeyKind] = KeyKind.USER
    signer_kind: ClassVar[KeyKind] = KeyKind.ACCOUNT

    publish: Permission = Field(default_factory=Permission)
    subscribe: Permission = Field(default_factory=Permission)
    subs: int = NO_LIMIT
    data: int = NO_LIMIT
    payload: int = NO_LIMIT

    def nats_section(self) -> dict[str, Any]:
        return {
            "pub": self.publish.to_payload(),
            "sub": self.subscribe.to_payload(),
            "subs": self.subs,
            "data": self.data,
            "payload": self.payload,
        }


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_operator_claims(public_key: str, name: str) -> OperatorClaims:
    """Build the self-describing claims of an operator."""
    return OperatorClaims(subject=public_key, name=name)


def build_account_claims(
    public_key: str,
    name: str,
    description: str = "",
    limits: Optional[AccountLimits] = None,
) -> AccountClaims:
    """Build account claims from declared limits.

    Args:
        public_key: The account's public nkey (the claims subject).
        name: Account name.
        description: Free-form description.
        limits: Declared limits; None keeps every broker default.
    """
    claims = AccountClaims(subject=public_key, name=name, description=description)
    if limits is None:
        return claims

    claims.limits.conn = limits.conn
    claims.limits.subs = limits.subs
    claims.limits.payload = limits.payload
    claims.limits.data = limits.data
    claims.limits.exports = limits.exports
    claims.limits.imports = limits.imports
    claims.limits.wildcards = limits.wildcard_exports

    js = limits.jetstream
    if js is not None:
        claims.limits.mem_storage = js.memory_storage
        claims.limits.disk_storage = js.disk_storage
        claims.limits.streams = js.streams
        claims.limits.consumer = js.consumer
        claims.limits.max_ack_pending = js.max_ack_pending
        claims.limits.mem_max_stream_bytes = js.memory_max_stream_bytes
        claims.limits.disk_max_stream_bytes = js.disk_max_stream_bytes
        claims.limits.max_bytes_required = js.max_bytes_required

    return claims


def build_user_claims(
    public_key: str,
    name: str,
    permissions: Optional[Permissions] = None,
) -> UserClaims:
    """Build user claims from declared publish/subscribe permissions."""
    claims = UserClaims(subject=public_key, name=name)
    if permissions is None:
        return claims

    if permissions.publish_allow:
        claims.publish.add_allow(*permissions.publish_allow)
    if permissions.publish_deny:
        claims.publish.add_deny(*permissions.publish_deny)
    if permissions.subscribe_allow:
        claims.subscribe.add_allow(*permissions.subscribe_allow)
    if permissions.subscribe_deny:
        claims.subscribe.add_deny(*permissions.subscribe_deny)
    return claims
