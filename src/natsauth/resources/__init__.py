"""Declared-state resources and the registry that holds them."""

from .models import (
    AccountLimits,
    AccountSpec,
    AccountStatus,
    AuthConfigSpec,
    AuthConfigStatus,
    AuthMode,
    Condition,
    JetStreamLimits,
    JWTConfig,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    ObjectMeta,
    ObjectRef,
    PasswordSource,
    Permissions,
    Resource,
    ResourceKey,
    ResourceState,
    ResolverType,
    SecretRef,
    ServerAuthConfigRef,
    UserAuthType,
    UserSpec,
    UserStatus,
)
from .registry import ResourceRegistry
from .manifest import load_manifests, parse_resource

__all__ = [
    "AccountLimits",
    "AccountSpec",
    "AccountStatus",
    "AuthConfigSpec",
    "AuthConfigStatus",
    "AuthMode",
    "Condition",
    "JetStreamLimits",
    "JWTConfig",
    "NatsAccount",
    "NatsAuthConfig",
    "NatsUser",
    "ObjectMeta",
    "ObjectRef",
    "PasswordSource",
    "Permissions",
    "Resource",
    "ResourceKey",
    "ResourceState",
    "ResolverType",
    "SecretRef",
    "ServerAuthConfigRef",
    "UserAuthType",
    "UserSpec",
    "UserStatus",
    "ResourceRegistry",
    "load_manifests",
    "parse_resource",
]
