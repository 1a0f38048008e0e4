"""
natsauth - Credential hierarchy reconciliation for NATS

Operator · Account · User

natsauth issues and maintains the operator → account → user credential
hierarchy of a NATS deployment: it mints and restores nkeys, signs account
and user tokens, persists them as versioned records, and renders the server
authorization configuration in the flat or the JWT dialect.

Version: 0.1.0
"""

__version__ = "0.1.0"

# Identity
from .identity import (
    KeyKind,
    KeyPair,
    obtain_keypair,
    generate_creds_file,
    parse_creds_file,
)

# Claims and tokens
from .jwt import (
    build_account_claims,
    build_operator_claims,
    build_user_claims,
    sign,
    verify,
)

# Rendering
from .authconf import (
    render_jwt_auth_conf,
    render_jwt_auth_conf_with_preload,
    render_mixed_auth_conf,
    render_token_auth_conf,
)

# Declared state
from .resources import (
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    ResourceRegistry,
    load_manifests,
)

# Storage
from .storage import (
    CredentialStore,
    MemoryStorageProvider,
    RedisStorageProvider,
    StorageConfig,
    create_provider,
)

# Engine
from .config import EngineConfig
from .controller import ReconciliationEngine

# Exceptions
from .exceptions import (
    NatsAuthError,
    IdentityError,
    InvalidSeedError,
    SigningError,
    DependencyNotReadyError,
    UnsupportedConfigurationError,
    ResourceValidationError,
    StorageError,
    StoreConflictError,
)

__all__ = [
    "__version__",
    # Identity
    "KeyKind",
    "KeyPair",
    "obtain_keypair",
    "generate_creds_file",
    "parse_creds_file",
    # Claims and tokens
    "build_operator_claims",
    "build_account_claims",
    "build_user_claims",
    "sign",
    "verify",
    # Rendering
    "render_token_auth_conf",
    "render_jwt_auth_conf",
    "render_jwt_auth_conf_with_preload",
    "render_mixed_auth_conf",
    # Declared state
    "NatsAuthConfig",
    "NatsAccount",
    "NatsUser",
    "ResourceRegistry",
    "load_manifests",
    # Storage
    "CredentialStore",
    "MemoryStorageProvider",
    "RedisStorageProvider",
    "StorageConfig",
    "create_provider",
    # Engine
    "EngineConfig",
    "ReconciliationEngine",
    # Exceptions
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
