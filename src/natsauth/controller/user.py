"""
NatsUser reconciler.

Hierarchical users get a keypair and an account-signed token packaged as a
credentials file. Flat users get a username/password pair that is generated
once (or read from an external secret) and then left alone.
"""

from __future__ import annotations

import logging
from typing import Optional

from natsauth.constants import (
    ACCOUNT_SEED_FIELD,
    ANNOTATION_LAST_USER_UPDATE,
    EXTERNAL_PASSWORD_FIELD,
    NATS_URL_FIELD,
    PASSWORD_FIELD,
    USER_CREDS_FIELD,
    USER_JWT_FIELD,
    USER_SEED_ALT_FIELD,
    USER_SEED_FIELD,
    USERNAME_FIELD,
)
from natsauth.controller.authconfig import resolve_user_auth_type
from natsauth.controller.base import Outcome, Reconciler, claims_hash, is_current, seed_ref_inputs
from natsauth.events import EVENT_CREDENTIALS_ISSUED
from natsauth.exceptions import (
    DependencyNotReadyError,
    ResourceValidationError,
    UnsupportedConfigurationError,
)
from natsauth.identity import KeyKind, KeyPair, generate_creds_file, generate_password, obtain_keypair
from natsauth.jwt import build_user_claims, sign
from natsauth.resources.models import (
    AuthMode,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    SecretRef,
    UserAuthType,
)
from natsauth.storage.credentials import RecordKind, account_record_name, user_record_name

logger = logging.getLogger(__name__)


class UserReconciler(Reconciler):
    resource_type = NatsUser

    async def reconcile(self, resource: NatsUser) -> Outcome:
        auth_config = await self.get_auth_config(resource.spec.auth_config_ref, resource.namespace)
        mode = auth_config.spec.mode

        auth_type = resolve_user_auth_type(resource, mode)
        if auth_type is UserAuthType.INHERIT:
            raise UnsupportedConfigurationError(
                f"authType inherit is ambiguous under mixed mode of {auth_config.key}; set token or jwt"
            )

        if auth_type is UserAuthType.JWT:
            if not mode.uses_jwt:
                raise UnsupportedConfigurationError(
                    f"JWT users require NatsAuthConfig {auth_config.key} in jwt or mixed mode"
                )
            return await self._reconcile_jwt_user(resource, auth_config)

        if mode is AuthMode.JWT:
            raise UnsupportedConfigurationError(
                f"Token users require NatsAuthConfig {auth_config.key} in token or mixed mode"
            )
        return await self._reconcile_flat_user(resource, auth_config)

    @staticmethod
    def _username(resource: NatsUser) -> str:
        return resource.spec.username or resource.name

    @staticmethod
    def _permissions_inputs(resource: NatsUser) -> Optional[dict]:
        # Subjects are sets in the issued claims; order and repeats do not count.
        permissions = resource.spec.permissions
        if permissions is None or permissions.is_empty():
            return None
        return {name: sorted(set(subjects)) for name, subjects in permissions.model_dump().items()}

    # -- hierarchical ------------------------------------------------------

    async def _reconcile_jwt_user(self, resource: NatsUser, auth_config: NatsAuthConfig) -> Outcome:
        spec = resource.spec
        status = resource.status
        if spec.account_ref is None:
            raise ResourceValidationError("accountRef is required for JWT users")

        account = await self._account_keypair(resource)
        username = self._username(resource)

        record_name = user_record_name(resource.name)
        record = await self.store.get(RecordKind.USER, record_name, resource.namespace)
        desired_hash = claims_hash(
            {
                "name": username,
                "permissions": self._permissions_inputs(resource),
                "account": account.public_key,
                "nats_url": auth_config.spec.nats_url,
                "seed_ref": seed_ref_inputs(spec.existing_seed_secret),
            }
        )

        if is_current(
            record,
            USER_SEED_FIELD,
            (USER_CREDS_FIELD, USER_JWT_FIELD),
            status.public_key,
            status.claims_hash,
            desired_hash,
        ):
            logger.debug("User %s is up to date (%s)", resource.key, status.public_key)
            return Outcome(f"User {status.public_key} is up to date")

        seed = await self._user_seed(resource, record)
        keypair = obtain_keypair(KeyKind.USER, seed)
        token = sign(build_user_claims(keypair.public_key, username, spec.permissions), account)
        data = {
            USER_CREDS_FIELD: generate_creds_file(token, keypair.seed),
            USER_JWT_FIELD: token,
            USER_SEED_FIELD: keypair.seed,
            NATS_URL_FIELD: auth_config.spec.nats_url,
        }
        await self.store.put(RecordKind.USER, record_name, data, expected=record, namespace=resource.namespace)

        status.public_key = keypair.public_key
        status.secret_ref = SecretRef(name=record_name, namespace=resource.namespace)
        status.claims_hash = desired_hash
        self.metrics.record_issued(RecordKind.USER.value)
        self.emit(EVENT_CREDENTIALS_ISSUED, resource, public_key=keypair.public_key)
        logger.info("Issued user credentials for %s (%s)", resource.key, keypair.public_key)
        return Outcome(f"User {keypair.public_key} signed by account {account.public_key}")

    async def _account_keypair(self, resource: NatsUser) -> KeyPair:
        """Restore the keypair of the account that signs this user.

        Raises:
            DependencyNotReadyError: If the account does not exist, has not
                been issued yet, or is being re-issued.
        """
        ref = resource.spec.account_ref
        namespace = ref.resolve_namespace(resource.namespace)
        account = await self.registry.get(NatsAccount, ref.name, namespace)
        if account is None:
            raise DependencyNotReadyError(f"NatsAccount {namespace}/{ref.name} not found")
        if not account.status.public_key:
            raise DependencyNotReadyError(f"NatsAccount {account.key} is not ready yet")

        record = await self.store.get(RecordKind.ACCOUNT, account_record_name(account.name), account.namespace)
        if record is None or not record.data.get(ACCOUNT_SEED_FIELD):
            raise DependencyNotReadyError(f"Account record of {account.key} not found")

        keypair = KeyPair.from_seed(record.data[ACCOUNT_SEED_FIELD])
        if keypair.public_key != account.status.public_key:
            raise DependencyNotReadyError(f"NatsAccount {account.key} is being re-issued")
        return keypair

    async def _user_seed(self, resource: NatsUser, record) -> Optional[str]:
        """External seed reference first, then the stored seed."""
        ref = resource.spec.existing_seed_secret
        if ref is not None and ref.name:
            return await self.store.read_external(
                ref, [USER_SEED_ALT_FIELD, USER_SEED_FIELD], resource.namespace
            )
        if record is not None:
            return record.data.get(USER_SEED_FIELD)
        return None

    # -- flat ----------------------------------------------------------------

    async def _reconcile_flat_user(self, resource: NatsUser, auth_config: NatsAuthConfig) -> Outcome:
        status = resource.status
        username = self._username(resource)
        record_name = user_record_name(resource.name)
        record = await self.store.get(RecordKind.USER, record_name, resource.namespace)

        password = await self._password(resource, record)
        data = {
            USERNAME_FIELD: username,
            PASSWORD_FIELD: password,
            NATS_URL_FIELD: auth_config.spec.nats_url,
        }
        _, written = await self.store.write_if_changed(
            RecordKind.USER, record_name, data, existing=record, namespace=resource.namespace
        )

        desired_hash = claims_hash(
            {
                "username": username,
                "permissions": self._permissions_inputs(resource),
                "nats_url": auth_config.spec.nats_url,
            }
        )
        changed = written or status.claims_hash != desired_hash

        status.public_key = ""
        status.secret_ref = SecretRef(name=record_name, namespace=resource.namespace)
        status.claims_hash = desired_hash

        if written:
            self.metrics.record_issued(RecordKind.USER.value)
            self.emit(EVENT_CREDENTIALS_ISSUED, resource, username=username)
            logger.info("Wrote flat credentials for %s", resource.key)
        if not changed:
            return Outcome(f"Flat user {username} is up to date")
        outcome = Outcome(f"Flat user {username} updated")
        outcome.notify(auth_config.key, ANNOTATION_LAST_USER_UPDATE)
        return outcome

    async def _password(self, resource: NatsUser, record) -> str:
        """External reference first, then the stored password, then a new one."""
        source = resource.spec.password_from
        if source is not None and source.secret_ref is not None and source.secret_ref.name:
            return await self.store.read_external(
                source.secret_ref, [EXTERNAL_PASSWORD_FIELD], resource.namespace
            )
        if record is not None and record.data.get(PASSWORD_FIELD):
            return record.data[PASSWORD_FIELD]
        return generate_password()
