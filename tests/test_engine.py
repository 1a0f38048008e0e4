"""
End-to-end tests for the reconciliation engine.

Resources are applied to an in-memory registry, the engine drains its work
queue, and the assertions look at persisted records, rendered server
configuration and resource status.
"""

import asyncio
from typing import Optional

import pytest

from natsauth.config import EngineConfig
from natsauth.constants import ANNOTATION_LAST_ACCOUNT_UPDATE, DEFAULT_NAMESPACE
from natsauth.controller import ReconciliationEngine
from natsauth.controller.account import CONDITION_JETSTREAM
from natsauth.controller.engine import CONDITION_READY
from natsauth.exceptions import StorageError
from natsauth.identity import KeyKind, KeyPair, is_valid_public_key, parse_creds_file
from natsauth.jwt import verify
from natsauth.observability import ReconcileMetrics
from natsauth.resources import (
    AccountLimits,
    AccountSpec,
    AuthConfigSpec,
    AuthMode,
    JetStreamLimits,
    JWTConfig,
    NatsAccount,
    NatsAuthConfig,
    NatsUser,
    ObjectMeta,
    ObjectRef,
    PasswordSource,
    Permissions,
    ResourceState,
    ResolverType,
    SecretRef,
    ServerAuthConfigRef,
    UserAuthType,
    UserSpec,
)
from natsauth.storage import RecordKind

NATS_URL = "nats://nats.default.svc:4222"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def auth_config(
    name: str = "root",
    mode: AuthMode = AuthMode.JWT,
    resolver: ResolverType = ResolverType.PRELOAD,
    operator_name: str = "NATS Operator",
    operator_seed_secret: Optional[SecretRef] = None,
    nats_url: str = NATS_URL,
) -> NatsAuthConfig:
    jwt = None
    if mode.uses_jwt:
        jwt = JWTConfig(resolver=resolver, operator_name=operator_name, operator_seed_secret=operator_seed_secret)
    return NatsAuthConfig(
        metadata=ObjectMeta(name=name),
        spec=AuthConfigSpec(
            nats_url=nats_url,
            mode=mode,
            server_auth_config=ServerAuthConfigRef(name="nats-auth"),
            jwt=jwt,
        ),
    )


def account(
    name: str = "prod",
    auth: str = "root",
    limits: Optional[AccountLimits] = None,
    existing_seed_secret: Optional[SecretRef] = None,
) -> NatsAccount:
    return NatsAccount(
        metadata=ObjectMeta(name=name),
        spec=AccountSpec(
            auth_config_ref=ObjectRef(name=auth),
            limits=limits,
            existing_seed_secret=existing_seed_secret,
        ),
    )


def user(
    name: str = "svc",
    auth: str = "root",
    account_ref: Optional[str] = "prod",
    auth_type: UserAuthType = UserAuthType.INHERIT,
    permissions: Optional[Permissions] = None,
    password_from: Optional[PasswordSource] = None,
    username: str = "",
) -> NatsUser:
    return NatsUser(
        metadata=ObjectMeta(name=name),
        spec=UserSpec(
            auth_config_ref=ObjectRef(name=auth),
            auth_type=auth_type,
            account_ref=ObjectRef(name=account_ref) if account_ref else None,
            permissions=permissions,
            password_from=password_from,
            username=username,
        ),
    )


async def aggregate(store):
    return await store.get(RecordKind.AGGREGATE, "nats-auth")


async def hierarchy(registry, engine, limits=None):
    """Apply an AuthConfig, an account and a JWT user and drain the queue."""
    await registry.apply(auth_config())
    await registry.apply(account(limits=limits))
    await registry.apply(user(permissions=Permissions(publish_allow=["orders.>"])))
    await engine.run_until_idle()


def race_aggregate_writes(monkeypatch, store, times: int) -> None:
    """Let another writer replace the aggregate right before each of the next *times* writes."""
    original = store.write_if_changed
    remaining = [times]

    async def write_if_changed(kind, name, data, existing=None, namespace=DEFAULT_NAMESPACE):
        if kind is RecordKind.AGGREGATE and remaining[0] > 0:
            remaining[0] -= 1
            foreign = {"auth.conf": f"# foreign {remaining[0]}"}
            await store.put(kind, name, foreign, expected=existing, namespace=namespace)
        return await original(kind, name, data, existing, namespace)

    monkeypatch.setattr(store, "write_if_changed", write_if_changed)


# ---------------------------------------------------------------------------
# Hierarchical mode
# ---------------------------------------------------------------------------


class TestOperatorAndAccounts:
    """Operator minting and account signing."""

    @pytest.mark.asyncio
    async def test_operator_minted(self, registry, store, engine):
        await registry.apply(auth_config())
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        assert root.status.state is ResourceState.READY
        assert root.status.resolver_ready
        assert is_valid_public_key(root.status.operator_public_key, KeyKind.OPERATOR)

        record = await store.get(RecordKind.OPERATOR, "root-operator-seed")
        assert KeyPair.from_seed(record.data["operator.seed"]).public_key == root.status.operator_public_key
        claims = verify(record.data["operator.jwt"])
        assert claims["iss"] == claims["sub"] == root.status.operator_public_key
        assert claims["name"] == "NATS Operator"
        assert claims["nats"]["type"] == "operator"

    @pytest.mark.asyncio
    async def test_account_signed_and_aggregated(self, registry, store, engine):
        await registry.apply(auth_config())
        await engine.run_until_idle()
        await registry.apply(account(limits=AccountLimits(conn=100)))
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        prod = await registry.get(NatsAccount, "prod")
        assert prod.status.state is ResourceState.READY
        assert prod.status.account_id == prod.status.public_key
        assert prod.status.jwt_secret_ref.name == "prod-account-jwt"

        record = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        claims = verify(record.data["account.jwt"])
        assert claims["iss"] == root.status.operator_public_key
        assert claims["sub"] == prod.status.account_id
        assert claims["nats"]["limits"]["conn"] == 100

        operator_jwt = (await store.get(RecordKind.OPERATOR, "root-operator-seed")).data["operator.jwt"]
        result = await aggregate(store)
        assert result.data["operator"] == operator_jwt
        assert result.data["prod"] == record.data["account.jwt"]
        conf = result.data["auth.conf"]
        assert conf.startswith(f"operator: {operator_jwt}\n\nresolver_preload: {{\n")
        assert f'"{prod.status.account_id}": "{record.data["account.jwt"]}"' in conf

    @pytest.mark.asyncio
    async def test_limit_change_resigns_with_same_key(self, registry, store, engine):
        await hierarchy(registry, engine, limits=AccountLimits(conn=100))
        before = await registry.get(NatsAccount, "prod")
        record_before = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        user_before = await store.get(RecordKind.USER, "svc-user-creds")

        await registry.apply(account(limits=AccountLimits(conn=200)))
        await engine.run_until_idle()

        after = await registry.get(NatsAccount, "prod")
        record_after = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        assert after.status.public_key == before.status.public_key
        assert record_after.data["account.seed"] == record_before.data["account.seed"]
        assert record_after.data["account.jwt"] != record_before.data["account.jwt"]
        assert verify(record_after.data["account.jwt"])["nats"]["limits"]["conn"] == 200
        assert (await aggregate(store)).data["prod"] == record_after.data["account.jwt"]

        # Users bind to the account key, which did not change
        user_after = await store.get(RecordKind.USER, "svc-user-creds")
        assert user_after.resource_version == user_before.resource_version

    @pytest.mark.asyncio
    async def test_jetstream_condition(self, registry, store, engine):
        limits = AccountLimits(jetstream=JetStreamLimits(memory_storage=1 << 20, disk_storage=1 << 30))
        await registry.apply(auth_config())
        await registry.apply(account(limits=limits))
        await engine.run_until_idle()

        prod = await registry.get(NatsAccount, "prod")
        condition = prod.status.get_condition(CONDITION_JETSTREAM)
        assert condition.status == "False"
        assert condition.reason == "ServerConfigRequired"
        record = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        assert verify(record.data["account.jwt"])["nats"]["limits"]["mem_storage"] == 1 << 20

        await registry.apply(account())
        await engine.run_until_idle()
        prod = await registry.get(NatsAccount, "prod")
        assert prod.status.get_condition(CONDITION_JETSTREAM) is None

    @pytest.mark.asyncio
    async def test_operator_rename_keeps_key_and_accounts(self, registry, store, engine):
        await hierarchy(registry, engine)
        root_before = await registry.get(NatsAuthConfig, "root")
        account_before = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")

        await registry.apply(auth_config(operator_name="Acme"))
        await engine.run_until_idle()

        root_after = await registry.get(NatsAuthConfig, "root")
        assert root_after.status.operator_public_key == root_before.status.operator_public_key
        operator_jwt = (await store.get(RecordKind.OPERATOR, "root-operator-seed")).data["operator.jwt"]
        assert verify(operator_jwt)["name"] == "Acme"
        assert (await aggregate(store)).data["operator"] == operator_jwt

        account_after = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        assert account_after.resource_version == account_before.resource_version

    @pytest.mark.asyncio
    async def test_external_operator_seed(self, registry, store, engine):
        external = KeyPair.create(KeyKind.OPERATOR)
        await store.put(RecordKind.SECRET, "op-seed", {"operator.seed": external.seed})
        await registry.apply(auth_config(operator_seed_secret=SecretRef(name="op-seed")))
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        assert root.status.operator_public_key == external.public_key

    @pytest.mark.asyncio
    async def test_external_seed_of_wrong_kind(self, registry, store, engine):
        wrong = KeyPair.create(KeyKind.ACCOUNT)
        await store.put(RecordKind.SECRET, "op-seed", {"operator.seed": wrong.seed})
        await registry.apply(auth_config(operator_seed_secret=SecretRef(name="op-seed")))
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        assert root.status.state is ResourceState.ERROR
        assert root.status.get_condition(CONDITION_READY).reason == "InvalidSeed"
        assert await store.get(RecordKind.OPERATOR, "root-operator-seed") is None

    @pytest.mark.asyncio
    async def test_external_account_seed(self, registry, store, engine):
        external = KeyPair.create(KeyKind.ACCOUNT)
        await store.put(RecordKind.SECRET, "acct-seed", {"account.seed": external.seed})
        await registry.apply(auth_config())
        await registry.apply(account(existing_seed_secret=SecretRef(name="acct-seed")))
        await engine.run_until_idle()

        prod = await registry.get(NatsAccount, "prod")
        assert prod.status.public_key == external.public_key


class TestUsers:
    """Account-signed user credentials."""

    @pytest.mark.asyncio
    async def test_user_credentials(self, registry, store, engine):
        await hierarchy(registry, engine)

        prod = await registry.get(NatsAccount, "prod")
        svc = await registry.get(NatsUser, "svc")
        assert svc.status.state is ResourceState.READY
        assert svc.status.secret_ref.name == "svc-user-creds"

        record = await store.get(RecordKind.USER, "svc-user-creds")
        jwt, seed = parse_creds_file(record.data["user.creds"])
        assert jwt == record.data["user.jwt"]
        assert seed == record.data["seed.nk"]
        assert record.data["NATS_URL"] == NATS_URL

        claims = verify(jwt)
        assert claims["iss"] == prod.status.public_key
        assert claims["sub"] == svc.status.public_key
        assert KeyPair.from_seed(seed).public_key == svc.status.public_key
        assert claims["nats"]["pub"] == {"allow": ["orders.>"]}

    @pytest.mark.asyncio
    async def test_user_applied_before_parents(self, registry, store, engine):
        await registry.apply(user())
        await engine.run_until_idle()
        svc = await registry.get(NatsUser, "svc")
        assert svc.status.state is ResourceState.PENDING
        assert svc.status.get_condition(CONDITION_READY).reason == "DependencyNotReady"

        await registry.apply(auth_config())
        await registry.apply(account())
        await engine.run_until_idle()
        # The account notifies its users once it is issued
        svc = await registry.get(NatsUser, "svc")
        assert svc.status.state is ResourceState.READY

    @pytest.mark.asyncio
    async def test_user_without_account_ref(self, registry, engine):
        await registry.apply(auth_config())
        await registry.apply(user(account_ref=None))
        await engine.run_until_idle()

        svc = await registry.get(NatsUser, "svc")
        assert svc.status.state is ResourceState.ERROR
        assert svc.status.get_condition(CONDITION_READY).reason == "ValidationError"

    @pytest.mark.asyncio
    async def test_hierarchy_invariant(self, registry, store, engine):
        await registry.apply(auth_config())
        for name in ("a", "b"):
            await registry.apply(account(name=name))
            for i in range(2):
                await registry.apply(user(name=f"{name}-user-{i}", account_ref=name))
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        for name in ("a", "b"):
            acct = await registry.get(NatsAccount, name)
            account_claims = verify((await store.get(RecordKind.ACCOUNT, f"{name}-account-jwt")).data["account.jwt"])
            assert account_claims["iss"] == root.status.operator_public_key
            for i in range(2):
                record = await store.get(RecordKind.USER, f"{name}-user-{i}-user-creds")
                assert verify(record.data["user.jwt"])["iss"] == acct.status.public_key

        conf = (await aggregate(store)).data["auth.conf"]
        assert conf.count("eyJ") >= 3

    @pytest.mark.asyncio
    async def test_subject_order_and_repeats_do_not_reissue(self, registry, store, engine):
        await registry.apply(auth_config())
        await registry.apply(account())
        await registry.apply(user(permissions=Permissions(publish_allow=["orders.>", "billing.>"])))
        await engine.run_until_idle()
        before = await store.get(RecordKind.USER, "svc-user-creds")

        reordered = Permissions(publish_allow=["billing.>", "orders.>", "billing.>"])
        await registry.apply(user(permissions=reordered))
        await engine.run_until_idle()
        assert (await store.get(RecordKind.USER, "svc-user-creds")).resource_version == before.resource_version

        await registry.apply(user(permissions=Permissions(publish_allow=["orders.>"])))
        await engine.run_until_idle()
        after = await store.get(RecordKind.USER, "svc-user-creds")
        assert after.resource_version > before.resource_version
        assert verify(after.data["user.jwt"])["nats"]["pub"] == {"allow": ["orders.>"]}

    @pytest.mark.asyncio
    async def test_empty_permissions_match_none(self, registry, store, engine):
        await registry.apply(auth_config())
        await registry.apply(account())
        await registry.apply(user())
        await engine.run_until_idle()
        before = await store.get(RecordKind.USER, "svc-user-creds")

        await registry.apply(user(permissions=Permissions()))
        await engine.run_until_idle()
        assert (await store.get(RecordKind.USER, "svc-user-creds")).resource_version == before.resource_version


# ---------------------------------------------------------------------------
# Flat and mixed modes
# ---------------------------------------------------------------------------


class TestFlatMode:
    """Username/password users rendered into the authorization table."""

    @pytest.mark.asyncio
    async def test_flat_user_rendered(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(
            user(
                name="pub",
                account_ref=None,
                auth_type=UserAuthType.INHERIT,
                permissions=Permissions(publish_allow=["events.>"]),
            )
        )
        await engine.run_until_idle()

        record = await store.get(RecordKind.USER, "pub-user-creds")
        assert record.data["USERNAME"] == "pub"
        assert len(record.data["PASSWORD"]) == 32
        assert record.data["NATS_URL"] == NATS_URL

        pub = await registry.get(NatsUser, "pub")
        assert pub.status.public_key == ""
        assert pub.status.state is ResourceState.READY

        conf = (await aggregate(store)).data["auth.conf"]
        assert 'user: "pub"' in conf
        assert f'password: "{record.data["PASSWORD"]}"' in conf
        assert "publish: {" in conf
        assert 'allow: "events.>"' in conf
        assert "subscribe" not in conf
        assert "operator" not in (await aggregate(store)).data

    @pytest.mark.asyncio
    async def test_no_users_renders_empty(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await engine.run_until_idle()
        assert (await aggregate(store)).data == {"auth.conf": ""}

    @pytest.mark.asyncio
    async def test_password_stable_across_spec_changes(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(user(name="pub", account_ref=None, auth_type=UserAuthType.TOKEN))
        await engine.run_until_idle()
        password = (await store.get(RecordKind.USER, "pub-user-creds")).data["PASSWORD"]

        await registry.apply(
            user(
                name="pub",
                account_ref=None,
                auth_type=UserAuthType.TOKEN,
                permissions=Permissions(subscribe_allow=["metrics.>"]),
            )
        )
        await engine.run_until_idle()

        assert (await store.get(RecordKind.USER, "pub-user-creds")).data["PASSWORD"] == password
        assert 'allow: "metrics.>"' in (await aggregate(store)).data["auth.conf"]

    @pytest.mark.asyncio
    async def test_password_from_external_secret(self, registry, store, engine):
        await store.put(RecordKind.SECRET, "pub-password", {"password": "s3cret"})
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(
            user(
                name="pub",
                account_ref=None,
                username="publisher",
                password_from=PasswordSource(secret_ref=SecretRef(name="pub-password")),
            )
        )
        await engine.run_until_idle()

        record = await store.get(RecordKind.USER, "pub-user-creds")
        assert record.data["USERNAME"] == "publisher"
        assert record.data["PASSWORD"] == "s3cret"
        assert 'user: "publisher"' in (await aggregate(store)).data["auth.conf"]

    @pytest.mark.asyncio
    async def test_missing_password_secret(self, registry, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(
            user(
                name="pub",
                account_ref=None,
                password_from=PasswordSource(secret_ref=SecretRef(name="absent")),
            )
        )
        await engine.run_until_idle()
        pub = await registry.get(NatsUser, "pub")
        assert pub.status.state is ResourceState.PENDING

    @pytest.mark.asyncio
    async def test_account_requires_jwt_mode(self, registry, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(account())
        result = await engine.reconcile((await registry.get(NatsAccount, "prod")).key)

        prod = await registry.get(NatsAccount, "prod")
        assert prod.status.state is ResourceState.ERROR
        assert prod.status.get_condition(CONDITION_READY).reason == "UnsupportedConfiguration"
        assert result.requeue_after == engine.config.error_retry

    @pytest.mark.asyncio
    async def test_jwt_user_under_token_mode(self, registry, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(user(auth_type=UserAuthType.JWT))
        await engine.run_until_idle()
        svc = await registry.get(NatsUser, "svc")
        assert svc.status.get_condition(CONDITION_READY).reason == "UnsupportedConfiguration"


class TestMixedMode:
    """Hierarchical section plus a flat table in one configuration."""

    @pytest.mark.asyncio
    async def test_mixed_rendering(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.MIXED))
        await registry.apply(account())
        await registry.apply(user(name="svc", auth_type=UserAuthType.JWT))
        await registry.apply(user(name="legacy", account_ref=None, auth_type=UserAuthType.TOKEN))
        await engine.run_until_idle()

        prod = await registry.get(NatsAccount, "prod")
        conf = (await aggregate(store)).data["auth.conf"]
        assert conf.startswith("operator: ")
        assert f'"{prod.status.account_id}": ' in conf
        assert "authorization {" in conf
        assert 'user: "legacy"' in conf
        assert 'user: "svc"' not in conf
        assert (await store.get(RecordKind.USER, "svc-user-creds")).data["user.creds"]

    @pytest.mark.asyncio
    async def test_inherit_is_ambiguous(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.MIXED))
        await registry.apply(user(name="who", account_ref=None, auth_type=UserAuthType.INHERIT))
        await engine.run_until_idle()

        who = await registry.get(NatsUser, "who")
        assert who.status.state is ResourceState.ERROR
        assert who.status.get_condition(CONDITION_READY).reason == "UnsupportedConfiguration"
        assert await store.get(RecordKind.USER, "who-user-creds") is None


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------


class TestConvergence:
    """Idempotence, the consistency guard and deletion."""

    @pytest.mark.asyncio
    async def test_second_pass_writes_nothing(self, registry, provider, engine):
        await hierarchy(registry, engine)
        writes = provider.writes

        for kind in (NatsAuthConfig, NatsAccount, NatsUser):
            for resource in await registry.list(kind):
                await engine.reconcile(resource.key)
        assert provider.writes == writes

    @pytest.mark.asyncio
    async def test_reapplying_identical_manifests_writes_nothing(self, registry, provider, engine):
        await hierarchy(registry, engine)
        writes = provider.writes
        await hierarchy(registry, engine)
        assert provider.writes == writes

    @pytest.mark.asyncio
    async def test_flat_mode_second_pass_writes_nothing(self, registry, provider, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(user(name="pub", account_ref=None, auth_type=UserAuthType.TOKEN))
        await engine.run_until_idle()
        writes = provider.writes

        await engine.enqueue_all()
        await engine.run_until_idle()
        assert provider.writes == writes

    @pytest.mark.asyncio
    async def test_concurrent_reconciles_issue_once(self, registry, provider, engine):
        await registry.apply(auth_config())
        await engine.run_until_idle()
        prod = await registry.apply(account())
        writes = provider.writes

        await asyncio.gather(engine.reconcile(prod.key), engine.reconcile(prod.key))
        assert provider.writes - writes == 1

    @pytest.mark.asyncio
    async def test_status_drift_restored_from_seed(self, registry, store, engine):
        await hierarchy(registry, engine)
        prod = await registry.get(NatsAccount, "prod")
        record = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        seed_public_key = KeyPair.from_seed(record.data["account.seed"]).public_key

        stray = KeyPair.create(KeyKind.ACCOUNT).public_key
        prod.status.public_key = stray
        prod.status.account_id = stray
        await registry.update_status(prod)
        await engine.reconcile(prod.key)

        repaired = await registry.get(NatsAccount, "prod")
        assert repaired.status.public_key == seed_public_key
        assert repaired.status.account_id == seed_public_key
        after = await store.get(RecordKind.ACCOUNT, "prod-account-jwt")
        assert after.data["account.seed"] == record.data["account.seed"]
        assert verify(after.data["account.jwt"])["sub"] == seed_public_key

    @pytest.mark.asyncio
    async def test_lost_status_does_not_mint_new_keys(self, registry, store, engine):
        await hierarchy(registry, engine)
        svc = await registry.get(NatsUser, "svc")
        public_key = svc.status.public_key

        svc.status.public_key = ""
        svc.status.claims_hash = ""
        await registry.update_status(svc)
        await engine.reconcile(svc.key)

        assert (await registry.get(NatsUser, "svc")).status.public_key == public_key

    @pytest.mark.asyncio
    async def test_deleted_account_leaves_aggregate(self, registry, store, engine):
        await registry.apply(auth_config())
        await registry.apply(account())
        await engine.run_until_idle()
        assert "prod" in (await aggregate(store)).data

        prod = await registry.get(NatsAccount, "prod")
        await registry.delete(prod.key)
        await engine.run_until_idle()

        result = await aggregate(store)
        assert "prod" not in result.data
        assert "resolver_preload" not in result.data["auth.conf"]

    @pytest.mark.asyncio
    async def test_deleted_flat_user_leaves_table(self, registry, store, engine):
        await registry.apply(auth_config(mode=AuthMode.TOKEN))
        await registry.apply(user(name="pub", account_ref=None))
        await engine.run_until_idle()
        assert 'user: "pub"' in (await aggregate(store)).data["auth.conf"]

        await registry.delete((await registry.get(NatsUser, "pub")).key)
        await engine.run_until_idle()
        assert (await aggregate(store)).data["auth.conf"] == ""

    @pytest.mark.asyncio
    async def test_operator_rekey_reaches_accounts_after_failed_pass(self, registry, store, engine, monkeypatch):
        await hierarchy(registry, engine)
        original = store.write_if_changed

        async def unavailable(kind, name, data, existing=None, namespace=DEFAULT_NAMESPACE):
            if kind is RecordKind.AGGREGATE:
                raise StorageError("aggregate backend unavailable")
            return await original(kind, name, data, existing, namespace)

        monkeypatch.setattr(store, "write_if_changed", unavailable)
        replacement = KeyPair.create(KeyKind.OPERATOR)
        await store.put(RecordKind.SECRET, "op-seed", {"operator.seed": replacement.seed})
        await registry.apply(auth_config(operator_seed_secret=SecretRef(name="op-seed")))
        await engine.run_until_idle()

        # The operator was re-keyed and recorded, but the pass failed afterwards
        root = await registry.get(NatsAuthConfig, "root")
        assert root.status.state is ResourceState.ERROR
        assert root.status.operator_public_key == replacement.public_key

        monkeypatch.undo()
        await engine.reconcile(root.key)
        await engine.run_until_idle()

        account_jwt = (await store.get(RecordKind.ACCOUNT, "prod-account-jwt")).data["account.jwt"]
        assert verify(account_jwt)["iss"] == replacement.public_key
        assert (await aggregate(store)).data["prod"] == account_jwt
        assert (await registry.get(NatsAuthConfig, "root")).status.state is ResourceState.READY
        assert (await registry.get(NatsAccount, "prod")).status.state is ResourceState.READY


# ---------------------------------------------------------------------------
# Write conflicts
# ---------------------------------------------------------------------------


class TestConflicts:
    """Aggregate read-modify-write retries and status write conflicts."""

    @pytest.mark.asyncio
    async def test_aggregate_write_retried_after_conflict(self, registry, store, engine, monkeypatch):
        root = await registry.apply(auth_config())
        race_aggregate_writes(monkeypatch, store, times=1)

        result = await engine.reconcile(root.key)

        assert result.requeue_after == engine.config.resync_interval
        operator_jwt = (await store.get(RecordKind.OPERATOR, "root-operator-seed")).data["operator.jwt"]
        written = await aggregate(store)
        assert written.data["operator"] == operator_jwt
        assert "foreign" not in written.data["auth.conf"]
        assert (await registry.get(NatsAuthConfig, "root")).status.state is ResourceState.READY

    @pytest.mark.asyncio
    async def test_exhausted_retries_requeue_immediately(self, registry, store, engine, monkeypatch, collector):
        root = await registry.apply(auth_config())
        race_aggregate_writes(monkeypatch, store, times=engine.config.max_conflict_retries)

        result = await engine.reconcile(root.key)

        assert result.requeue_after == 0
        assert result.outcome == "conflict"
        failed = await registry.get(NatsAuthConfig, "root")
        assert failed.status.state is ResourceState.ERROR
        assert failed.status.get_condition(CONDITION_READY).reason == "StoreConflict"
        assert collector.get_sample_value(
            "natsauth_reconcile_total", {"kind": "NatsAuthConfig", "result": "conflict"}
        ) == 1

        # The other writer has stopped; the immediate retry converges
        assert (await engine.reconcile(root.key)).requeue_after == engine.config.resync_interval
        assert (await registry.get(NatsAuthConfig, "root")).status.state is ResourceState.READY

    @pytest.mark.asyncio
    async def test_status_conflict_withholds_notifications(self, registry, store, engine, monkeypatch):
        await registry.apply(auth_config())
        await engine.run_until_idle()
        prod = await registry.apply(account())
        original = store.put

        async def put_then_touch(kind, name, data, expected=None, namespace=DEFAULT_NAMESPACE):
            record = await original(kind, name, data, expected, namespace)
            if kind is RecordKind.ACCOUNT:
                await registry.touch(prod.key, "example.com/restarted-at")
            return record

        monkeypatch.setattr(store, "put", put_then_touch)
        result = await engine.reconcile(prod.key)

        assert result.requeue_after == 0
        assert result.outcome == "conflict"
        assert (await registry.get(NatsAccount, "prod")).status.public_key == ""
        root = await registry.get(NatsAuthConfig, "root")
        assert ANNOTATION_LAST_ACCOUNT_UPDATE not in root.metadata.annotations

        monkeypatch.undo()
        seed = (await store.get(RecordKind.ACCOUNT, "prod-account-jwt")).data["account.seed"]
        assert (await engine.reconcile(prod.key)).requeue_after == engine.config.resync_interval

        assert (await registry.get(NatsAccount, "prod")).status.public_key == KeyPair.from_seed(seed).public_key
        root = await registry.get(NatsAuthConfig, "root")
        assert ANNOTATION_LAST_ACCOUNT_UPDATE in root.metadata.annotations


# ---------------------------------------------------------------------------
# Engine plumbing
# ---------------------------------------------------------------------------


class TestEngine:
    """Requeue policy, resolver directory, events and metrics."""

    @pytest.mark.asyncio
    async def test_requeue_policy(self, registry, engine):
        await registry.apply(auth_config())
        await registry.apply(account(auth="absent"))
        root = await registry.get(NatsAuthConfig, "root")
        prod = await registry.get(NatsAccount, "prod")

        assert (await engine.reconcile(root.key)).requeue_after == engine.config.resync_interval
        pending = await engine.reconcile(prod.key)
        assert pending.requeue_after == engine.config.dependency_retry
        assert pending.outcome == "requeue"
        assert (await registry.get(NatsAccount, "prod")).status.state is ResourceState.PENDING

    @pytest.mark.asyncio
    async def test_invalid_url(self, registry, store, engine):
        await registry.apply(auth_config(nats_url="tcp://nats:4222"))
        await engine.run_until_idle()

        root = await registry.get(NatsAuthConfig, "root")
        assert root.status.state is ResourceState.ERROR
        assert root.status.get_condition(CONDITION_READY).reason == "ValidationError"
        assert await aggregate(store) is None

    @pytest.mark.asyncio
    async def test_reconcile_of_missing_resource(self, registry, engine):
        await registry.apply(auth_config())
        root = await registry.get(NatsAuthConfig, "root")
        await registry.delete(root.key)
        result = await engine.reconcile(root.key)
        assert result.requeue_after is None

    @pytest.mark.asyncio
    async def test_directory_resolver(self, registry, store, tmp_path, collector):
        engine = ReconciliationEngine(
            registry, store, EngineConfig(resolver_root=str(tmp_path)), ReconcileMetrics(collector)
        )
        await registry.apply(auth_config(resolver=ResolverType.DIRECTORY))
        await registry.apply(account())
        await engine.run_until_idle()

        prod = await registry.get(NatsAccount, "prod")
        conf = (await aggregate(store)).data["auth.conf"]
        assert "resolver: {" in conf
        assert 'dir: "/var/lib/nats-resolver"' in conf
        assert "resolver_preload" not in conf

        base = tmp_path / "default" / "root"
        operator_jwt = (await store.get(RecordKind.OPERATOR, "root-operator-seed")).data["operator.jwt"]
        assert (base / "operator.jwt").read_text() == operator_jwt
        account_jwt = (await store.get(RecordKind.ACCOUNT, "prod-account-jwt")).data["account.jwt"]
        assert (base / "accounts" / f"{prod.status.account_id}.jwt").read_text() == account_jwt

        await registry.delete(prod.key)
        await engine.run_until_idle()
        assert list((base / "accounts").iterdir()) == []

    @pytest.mark.asyncio
    async def test_events_emitted(self, registry, engine):
        issued = []
        rendered = []
        registry.event_bus.subscribe("credentials.*", issued.append)
        registry.event_bus.subscribe("config.*", rendered.append)

        await hierarchy(registry, engine)

        kinds = sorted(event.payload["kind"] for event in issued)
        assert kinds == ["NatsAccount", "NatsAuthConfig", "NatsUser"]
        assert rendered
        assert rendered[-1].payload["accounts"] == 1

    @pytest.mark.asyncio
    async def test_metrics(self, registry, engine, collector):
        await hierarchy(registry, engine)
        assert collector.get_sample_value(
            "natsauth_reconcile_total", {"kind": "NatsAccount", "result": "success"}
        ) >= 1
        for kind in ("operator", "account", "user"):
            assert collector.get_sample_value("natsauth_credentials_issued_total", {"kind": kind}) == 1
        assert collector.get_sample_value("natsauth_config_renders_total", {"mode": "jwt"}) >= 1

    @pytest.mark.asyncio
    async def test_run_with_workers(self, registry, store, engine):
        task = asyncio.create_task(engine.run(workers=2))
        await registry.apply(auth_config())
        await registry.apply(account())
        await registry.apply(user())

        for _ in range(200):
            await asyncio.sleep(0.01)
            svc = await registry.get(NatsUser, "svc")
            result = await aggregate(store)
            if svc.status.state is ResourceState.READY and result and "prod" in result.data:
                break

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await registry.get(NatsUser, "svc")).status.state is ResourceState.READY
        assert "prod" in (await aggregate(store)).data
        assert engine.queue.scheduled == 0
