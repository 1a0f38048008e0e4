"""
Declared-state resource models.

Three resource kinds describe the credential hierarchy:

- ``NatsAuthConfig``: the root of trust. Owns the operator keypair and the
  aggregate server configuration.
- ``NatsAccount``: a tenant boundary signed by the operator.
- ``NatsUser``: a connecting principal, either signed by an account or
  authenticated with a username/password pair.

Field names accept both snake_case and the camelCase used in manifests.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Literal, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from natsauth.constants import (
    DEFAULT_NAMESPACE,
    DEFAULT_OPERATOR_NAME,
    DEFAULT_OPERATOR_SEED_KEY,
    DEFAULT_RESOLVER_DIR,
    DEFAULT_SERVER_CONFIG_KEY,
)
from natsauth.exceptions import ResourceValidationError


class AuthMode(str, Enum):
    """Server-wide authentication mode of a NatsAuthConfig."""

    TOKEN = "token"
    JWT = "jwt"
    MIXED = "mixed"

    @property
    def uses_jwt(self) -> bool:
        return self in (AuthMode.JWT, AuthMode.MIXED)


class UserAuthType(str, Enum):
    """Per-user authentication type."""

    TOKEN = "token"
    JWT = "jwt"
    INHERIT = "inherit"


class ResolverType(str, Enum):
    """How account JWTs reach the server in JWT mode."""

    PRELOAD = "preload"
    DIRECTORY = "directory"


class ResourceState(str, Enum):
    PENDING = "Pending"
    READY = "Ready"
    ERROR = "Error"


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


class ObjectRef(_Schema):
    """Reference to another declared resource."""

    name: str
    namespace: str = ""

    def resolve_namespace(self, default: str) -> str:
        return self.namespace or default


class SecretRef(_Schema):
    """Reference to a stored secret record."""

    name: str = ""
    namespace: str = ""
    key: Optional[str] = None


class ServerAuthConfigRef(_Schema):
    """Where the rendered server configuration is written."""

    name: str
    namespace: str = ""
    key: str = DEFAULT_SERVER_CONFIG_KEY
    type: Literal["ConfigMap", "Secret"] = "ConfigMap"


# ---------------------------------------------------------------------------
# NatsAuthConfig
# ---------------------------------------------------------------------------


class JWTConfig(_Schema):
    resolver_dir: str = DEFAULT_RESOLVER_DIR
    operator_seed_secret: Optional[SecretRef] = None
    operator_name: str = DEFAULT_OPERATOR_NAME
    resolver: ResolverType = ResolverType.PRELOAD

    @property
    def operator_seed_key(self) -> str:
        if self.operator_seed_secret and self.operator_seed_secret.key:
            return self.operator_seed_secret.key
        return DEFAULT_OPERATOR_SEED_KEY


class AuthConfigSpec(_Schema):
    nats_url: str = Field(..., alias="natsURL")
    mode: AuthMode = AuthMode.JWT
    server_auth_config: ServerAuthConfigRef
    jwt: Optional[JWTConfig] = None

    def validate_declared(self) -> None:
        """Check constraints that the schema alone cannot express.

        Raises:
            ResourceValidationError: If the spec is inconsistent.
        """
        if not self.nats_url.startswith("nats://"):
            raise ResourceValidationError(f"natsURL must start with nats://, got {self.nats_url!r}")
        if self.mode.uses_jwt and self.jwt is None:
            raise ResourceValidationError("JWT configuration is required for JWT or mixed mode")


# ---------------------------------------------------------------------------
# NatsAccount
# ---------------------------------------------------------------------------


class JetStreamLimits(_Schema):
    """JetStream limits (-1 for unlimited, 0 to disable storage)."""

    memory_storage: int = -1
    disk_storage: int = -1
    streams: int = -1
    consumer: int = -1
    max_ack_pending: int = -1
    memory_max_stream_bytes: int = -1
    disk_max_stream_bytes: int = -1
    max_bytes_required: bool = False


class AccountLimits(_Schema):
    """Account resource limits (-1 for unlimited)."""

    conn: int = -1
    subs: int = -1
    payload: int = -1
    data: int = -1
    exports: int = -1
    imports: int = -1
    wildcard_exports: bool = True
    jetstream: Optional[JetStreamLimits] = None


class AccountSpec(_Schema):
    auth_config_ref: ObjectRef
    description: str = ""
    limits: Optional[AccountLimits] = None
    existing_seed_secret: Optional[SecretRef] = None


# ---------------------------------------------------------------------------
# NatsUser
# ---------------------------------------------------------------------------


class Permissions(_Schema):
    """Publish/subscribe subject permissions."""

    publish_allow: list[str] = Field(default_factory=list)
    publish_deny: list[str] = Field(default_factory=list)
    subscribe_allow: list[str] = Field(default_factory=list)
    subscribe_deny: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.publish_allow or self.publish_deny or self.subscribe_allow or self.subscribe_deny)


class PasswordSource(_Schema):
    generate: bool = False
    secret_ref: Optional[SecretRef] = None


class UserSpec(_Schema):
    auth_config_ref: ObjectRef
    auth_type: UserAuthType = UserAuthType.INHERIT
    account_ref: Optional[ObjectRef] = None
    username: str = ""
    password_from: Optional[PasswordSource] = None
    permissions: Optional[Permissions] = None
    existing_seed_secret: Optional[SecretRef] = None


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class Condition(_Schema):
    type: str
    status: Literal["True", "False", "Unknown"]
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResourceStatus(_Schema):
    state: ResourceState = ResourceState.PENDING
    reason: str = ""
    conditions: list[Condition] = Field(default_factory=list)
    observed_generation: int = 0
    last_reconciled: Optional[datetime] = None
    claims_hash: str = ""

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def set_condition(self, condition: Condition) -> None:
        """Insert or replace the condition of the same type.

        The transition time is kept when the condition status did not change.
        """
        for i, existing in enumerate(self.conditions):
            if existing.type == condition.type:
                if existing.status == condition.status:
                    condition = condition.model_copy(
                        update={"last_transition_time": existing.last_transition_time}
                    )
                self.conditions[i] = condition
                return
        self.conditions.append(condition)

    def remove_condition(self, condition_type: str) -> None:
        self.conditions = [c for c in self.conditions if c.type != condition_type]


class AuthConfigStatus(ResourceStatus):
    operator_public_key: str = ""
    resolver_ready: bool = False


class AccountStatus(ResourceStatus):
    account_id: str = ""
    public_key: str = ""
    jwt_secret_ref: Optional[SecretRef] = None


class UserStatus(ResourceStatus):
    public_key: str = ""
    secret_ref: Optional[SecretRef] = None


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class ResourceKey(NamedTuple):
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


class ObjectMeta(_Schema):
    name: str
    namespace: str = DEFAULT_NAMESPACE
    generation: int = 1
    resource_version: int = 0
    annotations: dict[str, str] = Field(default_factory=dict)


class Resource(_Schema):
    """Common envelope of every declared resource."""

    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.metadata.namespace, self.metadata.name)


class NatsAuthConfig(Resource):
    kind: ClassVar[str] = "NatsAuthConfig"

    spec: AuthConfigSpec
    status: AuthConfigStatus = Field(default_factory=AuthConfigStatus)


class NatsAccount(Resource):
    kind: ClassVar[str] = "NatsAccount"

    spec: AccountSpec
    status: AccountStatus = Field(default_factory=AccountStatus)


class NatsUser(Resource):
    kind: ClassVar[str] = "NatsUser"

    spec: UserSpec
    status: UserStatus = Field(default_factory=UserStatus)


RESOURCE_TYPES: dict[str, type[Resource]] = {
    NatsAuthConfig.kind: NatsAuthConfig,
    NatsAccount.kind: NatsAccount,
    NatsUser.kind: NatsUser,
}
