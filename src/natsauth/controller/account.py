"""
NatsAccount reconciler.

Keeps an account's keypair and operator-signed token current. The keypair is
never replaced while a usable seed exists; the token is re-signed only when
the account's declared claims or the operator identity change.
"""

from __future__ import annotations

import logging
from typing import Optional

from natsauth.constants import (
    ACCOUNT_JWT_FIELD,
    ACCOUNT_SEED_FIELD,
    ANNOTATION_LAST_ACCOUNT_UPDATE,
    OPERATOR_SEED_FIELD,
)
from natsauth.controller.base import Outcome, Reconciler, claims_hash, is_current, seed_ref_inputs
from natsauth.events import EVENT_CREDENTIALS_ISSUED
from natsauth.exceptions import DependencyNotReadyError, UnsupportedConfigurationError
from natsauth.identity import KeyKind, KeyPair, obtain_keypair
from natsauth.jwt import build_account_claims, sign
from natsauth.resources.models import (
    Condition,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    SecretRef,
)
from natsauth.storage.credentials import RecordKind, account_record_name, operator_record_name

logger = logging.getLogger(__name__)

CONDITION_JETSTREAM = "JetStreamConfigured"


class AccountReconciler(Reconciler):
    resource_type = NatsAccount

    async def reconcile(self, resource: NatsAccount) -> Outcome:
        spec = resource.spec
        status = resource.status

        auth_config = await self.get_auth_config(spec.auth_config_ref, resource.namespace)
        if not auth_config.spec.mode.uses_jwt:
            raise UnsupportedConfigurationError(
                f"NatsAuthConfig {auth_config.key} must be in jwt or mixed mode for NatsAccount"
            )
        operator = await self._operator_keypair(auth_config)

        self._set_jetstream_condition(resource)

        record_name = account_record_name(resource.name)
        record = await self.store.get(RecordKind.ACCOUNT, record_name, resource.namespace)
        desired_hash = claims_hash(
            {
                "name": resource.name,
                "description": spec.description,
                "limits": spec.limits.model_dump(mode="json") if spec.limits else None,
                "operator": operator.public_key,
                "seed_ref": seed_ref_inputs(spec.existing_seed_secret),
            }
        )

        if is_current(
            record,
            ACCOUNT_SEED_FIELD,
            (ACCOUNT_JWT_FIELD,),
            status.public_key,
            status.claims_hash,
            desired_hash,
        ):
            logger.debug("Account %s is up to date (%s)", resource.key, status.public_key)
            return Outcome(f"Account {status.account_id} is up to date")

        if record is not None and status.public_key:
            logger.info(
                "Account %s changed or is inconsistent with status %s, re-issuing",
                resource.key,
                status.public_key,
            )

        seed = await self._account_seed(resource, record)
        keypair = obtain_keypair(KeyKind.ACCOUNT, seed)
        claims = build_account_claims(keypair.public_key, resource.name, spec.description, spec.limits)
        token = sign(claims, operator)
        data = {ACCOUNT_JWT_FIELD: token, ACCOUNT_SEED_FIELD: keypair.seed}
        await self.store.put(RecordKind.ACCOUNT, record_name, data, expected=record, namespace=resource.namespace)

        status.account_id = keypair.public_key
        status.public_key = keypair.public_key
        status.jwt_secret_ref = SecretRef(name=record_name, namespace=resource.namespace)
        status.claims_hash = desired_hash
        self.metrics.record_issued(RecordKind.ACCOUNT.value)
        self.emit(EVENT_CREDENTIALS_ISSUED, resource, public_key=keypair.public_key)
        logger.info("Issued account token for %s (%s)", resource.key, keypair.public_key)

        outcome = Outcome(f"Account {keypair.public_key} signed by operator {operator.public_key}")
        outcome.notify(auth_config.key, ANNOTATION_LAST_ACCOUNT_UPDATE)
        await self._notify_users(resource, outcome)
        return outcome

    async def _operator_keypair(self, auth_config: NatsAuthConfig) -> KeyPair:
        """Restore the operator keypair that signs this account.

        Raises:
            DependencyNotReadyError: If the operator has not been issued yet,
                or is being re-issued.
        """
        operator_public_key = auth_config.status.operator_public_key
        if not operator_public_key:
            raise DependencyNotReadyError(f"Operator of {auth_config.key} is not ready yet")

        record = await self.store.get(
            RecordKind.OPERATOR, operator_record_name(auth_config.name), auth_config.namespace
        )
        if record is None or not record.data.get(OPERATOR_SEED_FIELD):
            raise DependencyNotReadyError(f"Operator record of {auth_config.key} not found")

        operator = KeyPair.from_seed(record.data[OPERATOR_SEED_FIELD])
        if operator.public_key != operator_public_key:
            raise DependencyNotReadyError(f"Operator of {auth_config.key} is being re-issued")
        return operator

    async def _account_seed(self, resource: NatsAccount, record) -> Optional[str]:
        """External seed reference first, then the stored seed."""
        ref = resource.spec.existing_seed_secret
        if ref is not None and ref.name:
            return await self.store.read_external(ref, [ACCOUNT_SEED_FIELD], resource.namespace)
        if record is not None:
            return record.data.get(ACCOUNT_SEED_FIELD)
        return None

    def _set_jetstream_condition(self, resource: NatsAccount) -> None:
        limits = resource.spec.limits
        if limits is None or limits.jetstream is None:
            resource.status.remove_condition(CONDITION_JETSTREAM)
            return
        resource.status.set_condition(
            Condition(
                type=CONDITION_JETSTREAM,
                status="False",
                reason="ServerConfigRequired",
                message=(
                    "JetStream limits are written into the account token, but the server "
                    "configuration must enable JetStream separately"
                ),
            )
        )

    async def _notify_users(self, resource: NatsAccount, outcome: Outcome) -> None:
        for user in await self.registry.list(NatsUser):
            ref = user.spec.account_ref
            if ref is None:
                continue
            if ref.name == resource.name and ref.resolve_namespace(user.namespace) == resource.namespace:
                outcome.notify(user.key, ANNOTATION_LAST_ACCOUNT_UPDATE)
