"""
NatsAuthConfig reconciler.

Owns the operator keypair and token, and renders the aggregate server
configuration from the operator token, the token of every account that
references this AuthConfig, and the flat user entries.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from natsauth.authconf import (
    AccountJWT,
    FlatUser,
    ResolverDirectory,
    render_jwt_auth_conf,
    render_jwt_auth_conf_with_preload,
    render_mixed_auth_conf,
    render_token_auth_conf,
)
from natsauth.constants import (
    ACCOUNT_JWT_FIELD,
    AGGREGATE_OPERATOR_FIELD,
    ANNOTATION_LAST_OPERATOR_UPDATE,
    OPERATOR_JWT_FIELD,
    OPERATOR_SEED_FIELD,
    PASSWORD_FIELD,
    USERNAME_FIELD,
)
from natsauth.controller.base import Outcome, Reconciler, claims_hash, is_current, seed_ref_inputs
from natsauth.events import EVENT_CONFIG_RENDERED, EVENT_CREDENTIALS_ISSUED
from natsauth.exceptions import SigningError, StoreConflictError
from natsauth.identity import KeyKind, KeyPair, obtain_keypair
from natsauth.jwt import build_operator_claims, decode, sign
from natsauth.resources.models import (
    AuthMode,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    ResolverType,
    UserAuthType,
)
from natsauth.storage.credentials import (
    RecordKind,
    account_record_name,
    operator_record_name,
    user_record_name,
)

logger = logging.getLogger(__name__)


def references(resource, auth_config: NatsAuthConfig) -> bool:
    """True if *resource*'s authConfigRef points at *auth_config*."""
    ref = resource.spec.auth_config_ref
    return ref.name == auth_config.name and ref.resolve_namespace(resource.namespace) == auth_config.namespace


def resolve_user_auth_type(user: NatsUser, mode: AuthMode) -> UserAuthType:
    """Turn ``inherit`` into the concrete auth type of the AuthConfig mode.

    Under mixed mode ``inherit`` is ambiguous and stays unresolved.
    """
    if user.spec.auth_type is not UserAuthType.INHERIT:
        return user.spec.auth_type
    if mode is AuthMode.MIXED:
        return UserAuthType.INHERIT
    return UserAuthType(mode.value)


class AuthConfigReconciler(Reconciler):
    resource_type = NatsAuthConfig

    async def reconcile(self, resource: NatsAuthConfig) -> Outcome:
        spec = resource.spec
        spec.validate_declared()

        outcome = Outcome("")
        operator_jwt = ""
        operator_public_key = ""
        if spec.mode.uses_jwt:
            operator, operator_jwt = await self._ensure_operator(resource)
            operator_public_key = operator.public_key

        accounts = []
        if spec.mode.uses_jwt:
            accounts = await self._collect_accounts(resource, operator_public_key, outcome)
        users = await self._collect_flat_users(resource) if spec.mode is not AuthMode.JWT else []

        rendered = self._render(resource, operator_jwt, accounts, users)
        data = {spec.server_auth_config.key: rendered}
        if spec.mode.uses_jwt:
            data[AGGREGATE_OPERATOR_FIELD] = operator_jwt
            for account in accounts:
                data[account.account_name] = account.jwt

        written = await self._write_aggregate(resource, data)
        if written:
            self.metrics.record_render(spec.mode.value)
            self.emit(EVENT_CONFIG_RENDERED, resource, mode=spec.mode.value, accounts=len(accounts), users=len(users))

        if spec.mode.uses_jwt and spec.jwt.resolver is ResolverType.DIRECTORY:
            self._sync_resolver_directory(resource, operator_jwt, accounts)

        resource.status.resolver_ready = True
        outcome.message = (
            f"Rendered {spec.mode.value} configuration with {len(accounts)} account(s) "
            f"and {len(users)} flat user(s)"
        )
        return outcome

    # -- operator ----------------------------------------------------------

    async def _ensure_operator(self, resource: NatsAuthConfig) -> tuple[KeyPair, str]:
        """Mint, restore or re-sign the operator; returns its keypair and token."""
        jwt_config = resource.spec.jwt
        status = resource.status
        record_name = operator_record_name(resource.name)
        record = await self.store.get(RecordKind.OPERATOR, record_name, resource.namespace)
        desired_hash = claims_hash(
            {
                "name": jwt_config.operator_name,
                "seed_ref": seed_ref_inputs(jwt_config.operator_seed_secret),
            }
        )

        if is_current(
            record,
            OPERATOR_SEED_FIELD,
            (OPERATOR_JWT_FIELD,),
            status.operator_public_key,
            status.claims_hash,
            desired_hash,
        ):
            return KeyPair.from_seed(record.data[OPERATOR_SEED_FIELD]), record.data[OPERATOR_JWT_FIELD]

        seed: Optional[str] = None
        if jwt_config.operator_seed_secret is not None and jwt_config.operator_seed_secret.name:
            seed = await self.store.read_external(
                jwt_config.operator_seed_secret,
                [jwt_config.operator_seed_key],
                resource.namespace,
            )
        elif record is not None:
            seed = record.data.get(OPERATOR_SEED_FIELD)

        keypair = obtain_keypair(KeyKind.OPERATOR, seed)
        token = sign(build_operator_claims(keypair.public_key, jwt_config.operator_name), keypair)
        data = {OPERATOR_SEED_FIELD: keypair.seed, OPERATOR_JWT_FIELD: token}
        await self.store.put(RecordKind.OPERATOR, record_name, data, expected=record, namespace=resource.namespace)

        status.operator_public_key = keypair.public_key
        status.claims_hash = desired_hash
        self.metrics.record_issued(RecordKind.OPERATOR.value)
        self.emit(EVENT_CREDENTIALS_ISSUED, resource, public_key=keypair.public_key)
        logger.info("Issued operator token for %s (%s)", resource.key, keypair.public_key)

        return keypair, token

    # -- aggregation -------------------------------------------------------

    async def _collect_accounts(
        self,
        resource: NatsAuthConfig,
        operator_public_key: str,
        outcome: Outcome,
    ) -> list[AccountJWT]:
        """Gather the tokens of referencing accounts signed by the current operator.

        Accounts without a persisted token, or whose token names another
        issuer, are left out and notified. The check runs against stored
        state on every pass, so a notification lost to a failed pass is
        produced again by the next one.
        """
        accounts = []
        for account in await self.registry.list(NatsAccount):
            if not references(account, resource):
                continue
            record = await self.store.get(RecordKind.ACCOUNT, account_record_name(account.name), account.namespace)
            if record is None or not record.data.get(ACCOUNT_JWT_FIELD):
                logger.info("Account token for %s not persisted yet, skipping", account.key)
                outcome.notify(account.key, ANNOTATION_LAST_OPERATOR_UPDATE)
                continue
            token = record.data[ACCOUNT_JWT_FIELD]
            try:
                _, claims = decode(token)
            except SigningError as exc:
                logger.warning("Account token for %s is unreadable, skipping: %s", account.key, exc)
                outcome.notify(account.key, ANNOTATION_LAST_OPERATOR_UPDATE)
                continue
            if claims.get("iss") != operator_public_key:
                logger.info("Account token for %s was issued by a previous operator, skipping", account.key)
                outcome.notify(account.key, ANNOTATION_LAST_OPERATOR_UPDATE)
                continue
            accounts.append(
                AccountJWT(account_name=account.name, account_id=claims["sub"], jwt=token)
            )
        logger.debug("Collected %d account token(s) for %s", len(accounts), resource.key)
        return accounts

    async def _collect_flat_users(self, resource: NatsAuthConfig) -> list[FlatUser]:
        users = []
        for user in await self.registry.list(NatsUser):
            if not references(user, resource):
                continue
            if resolve_user_auth_type(user, resource.spec.mode) is not UserAuthType.TOKEN:
                continue
            record = await self.store.get(RecordKind.USER, user_record_name(user.name), user.namespace)
            if record is None or not record.data.get(USERNAME_FIELD):
                logger.info("Credentials for %s not persisted yet, skipping", user.key)
                continue
            users.append(
                FlatUser(
                    username=record.data[USERNAME_FIELD],
                    password=record.data.get(PASSWORD_FIELD, ""),
                    permissions=user.spec.permissions,
                )
            )
        return users

    def _render(
        self,
        resource: NatsAuthConfig,
        operator_jwt: str,
        accounts: list[AccountJWT],
        users: list[FlatUser],
    ) -> str:
        spec = resource.spec
        if spec.mode is AuthMode.TOKEN:
            return render_token_auth_conf(users)

        preload = spec.jwt.resolver is ResolverType.PRELOAD
        if spec.mode is AuthMode.JWT:
            if preload:
                return render_jwt_auth_conf_with_preload(operator_jwt, accounts)
            return render_jwt_auth_conf(operator_jwt, spec.jwt.resolver_dir)
        return render_mixed_auth_conf(
            operator_jwt,
            spec.jwt.resolver_dir,
            users,
            accounts if preload else None,
        )

    async def _write_aggregate(self, resource: NatsAuthConfig, data: dict[str, str]) -> bool:
        """Read-modify-write the aggregate record, retrying on conflicts."""
        target = resource.spec.server_auth_config
        namespace = target.namespace or resource.namespace
        attempts = self.config.max_conflict_retries
        for attempt in range(1, attempts + 1):
            existing = await self.store.get(RecordKind.AGGREGATE, target.name, namespace)
            try:
                _, written = await self.store.write_if_changed(
                    RecordKind.AGGREGATE, target.name, data, existing, namespace
                )
                return written
            except StoreConflictError:
                logger.info(
                    "Conflict writing %s/%s (attempt %d/%d)", namespace, target.name, attempt, attempts
                )
        raise StoreConflictError(
            f"Aggregate {namespace}/{target.name} kept changing after {attempts} attempts"
        )

    def _sync_resolver_directory(
        self,
        resource: NatsAuthConfig,
        operator_jwt: str,
        accounts: list[AccountJWT],
    ) -> None:
        if not self.config.resolver_root:
            return
        directory = ResolverDirectory(Path(self.config.resolver_root) / resource.namespace / resource.name)
        directory.write_operator_jwt(operator_jwt)
        for account in accounts:
            directory.write_account_jwt(account.account_id, account.jwt)
        directory.prune(account.account_id for account in accounts)
