"""Shared constants for natsauth."""

# Requeue intervals (seconds)
RESYNC_INTERVAL_SECONDS = 300.0
DEPENDENCY_RETRY_SECONDS = 10.0
ERROR_RETRY_SECONDS = 60.0
MAX_CONFLICT_RETRIES = 5

# AuthConfig defaults
DEFAULT_OPERATOR_NAME = "NATS Operator"
DEFAULT_RESOLVER_DIR = "/var/lib/nats-resolver"
DEFAULT_SERVER_CONFIG_KEY = "auth.conf"
DEFAULT_OPERATOR_SEED_KEY = "operator.seed"
DEFAULT_NAMESPACE = "default"

# Record field names
OPERATOR_SEED_FIELD = "operator.seed"
OPERATOR_JWT_FIELD = "operator.jwt"
ACCOUNT_JWT_FIELD = "account.jwt"
ACCOUNT_SEED_FIELD = "account.seed"
USER_CREDS_FIELD = "user.creds"
USER_JWT_FIELD = "user.jwt"
USER_SEED_FIELD = "seed.nk"
USER_SEED_ALT_FIELD = "user.seed"
NATS_URL_FIELD = "NATS_URL"
USERNAME_FIELD = "USERNAME"
PASSWORD_FIELD = "PASSWORD"
EXTERNAL_PASSWORD_FIELD = "password"
AGGREGATE_OPERATOR_FIELD = "operator"

# Record name suffixes
OPERATOR_RECORD_SUFFIX = "-operator-seed"
ACCOUNT_RECORD_SUFFIX = "-account-jwt"
USER_RECORD_SUFFIX = "-user-creds"

# Notification annotations
ANNOTATION_PREFIX = "natsauth.io/"
ANNOTATION_LAST_ACCOUNT_UPDATE = ANNOTATION_PREFIX + "last-account-update"
ANNOTATION_LAST_OPERATOR_UPDATE = ANNOTATION_PREFIX + "last-operator-update"
ANNOTATION_LAST_USER_UPDATE = ANNOTATION_PREFIX + "last-user-update"

# Generated secrets
PASSWORD_BYTES = 24
TOKEN_BYTES = 32
