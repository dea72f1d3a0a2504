"""Tests for AuthenticationFlow.

Covers:
- Login ordering (tenant, lookup, lock, email verification, password)
- Lockout transitions driven through login
- Tenant context isolation across concurrent logins
- Refresh, logout and bearer authentication
- Registration, email verification and password reset/change
"""

import asyncio
from datetime import timedelta

import pytest

from schoolauth import tenancy
from schoolauth.service.auth import AuthenticationFlow, strip_bearer
from schoolauth.service.email import EmailDispatcher
from schoolauth.service.errors import (
    AccountDisabled,
    AccountLocked,
    ConfigurationError,
    ConflictError,
    EmailNotVerified,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidRole,
    TenantMismatch,
    TenantNotFound,
)
from schoolauth.service.lockout import LockoutPolicy
from schoolauth.service.passwords import PasswordService
from schoolauth.service.revocation import RevocationStore
from schoolauth.service.tokens import TokenKind, TokenService
from schoolauth.storage.memory import MemoryStore
from schoolauth.storage.models import IdentityStatus, Role
from schoolauth.tenancy import TenantResolver

PASSWORD = "CorrectHorse1!"


def _seed_tenants(store):
    store.create_tenant("school-a", "School A", subdomain="school-a")
    store.create_tenant("school-b", "School B", subdomain="school-b")
    store.create_tenant("closed", "Closed School", is_active=False)
    return store


def build_flow(store, settings, clock, passwords, dispatcher):
    return AuthenticationFlow(
        store,
        TokenService.from_settings(settings, clock=clock),
        RevocationStore(clock=clock),
        LockoutPolicy.from_settings(store, settings, clock=clock),
        passwords,
        dispatcher,
        settings,
        tenant_resolver=TenantResolver(store),
        clock=clock,
    )


@pytest.fixture
def store():
    return _seed_tenants(MemoryStore())


@pytest.fixture
def dispatcher(recording_email):
    dispatcher = EmailDispatcher(recording_email, max_workers=1)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def flow(store, settings, clock, passwords, dispatcher):
    return build_flow(store, settings, clock, passwords, dispatcher)


@pytest.fixture
def alice(store, create_identity):
    return create_identity(store, password=PASSWORD)


class TestLogin:
    async def test_success_issues_both_tokens(self, flow, alice, store, clock):
        result = await flow.login("alice", PASSWORD, "school-a")

        assert result.token_type == "Bearer"
        assert result.expires_in == 15 * 60
        assert result.identity.id == alice.id
        access = flow.tokens.validate(result.access_token, TokenKind.ACCESS)
        refresh = flow.tokens.validate(result.refresh_token, TokenKind.REFRESH)
        assert access.tenant_id == refresh.tenant_id == "school-a"
        assert access.role is Role.STUDENT
        assert store.get_identity(alice.id).last_login_at == clock.now

    async def test_login_by_email(self, flow, alice):
        result = await flow.login("Alice@School-A.edu", PASSWORD, "school-a")
        assert result.identity.id == alice.id

    async def test_unknown_user_and_wrong_password_are_indistinguishable(self, flow, alice):
        with pytest.raises(InvalidCredentials) as unknown:
            await flow.login("mallory", PASSWORD, "school-a")
        with pytest.raises(InvalidCredentials) as wrong:
            await flow.login("alice", "wrong-password", "school-a")
        assert unknown.value.message == wrong.value.message
        assert unknown.value.error_code == wrong.value.error_code

    async def test_identity_from_other_tenant_not_found(self, flow, alice):
        with pytest.raises(InvalidCredentials):
            await flow.login("alice", PASSWORD, "school-b")

    async def test_tenant_context_cleared_after_success_and_failure(self, flow, alice):
        await flow.login("alice", PASSWORD, "school-a")
        assert tenancy.get_current_tenant() is None
        with pytest.raises(InvalidCredentials):
            await flow.login("alice", "nope-nope", "school-a")
        assert tenancy.get_current_tenant() is None

    async def test_tenant_falls_back_to_context(self, flow, alice):
        with tenancy.tenant_scope("school-a"):
            result = await flow.login("alice", PASSWORD)
        assert result.identity.tenant_id == "school-a"

    async def test_missing_tenant_is_configuration_error(self, flow, alice):
        with pytest.raises(ConfigurationError):
            await flow.login("alice", PASSWORD)

    async def test_inactive_and_unknown_tenants_rejected(self, flow, alice):
        with pytest.raises(TenantNotFound):
            await flow.login("alice", PASSWORD, "closed")
        with pytest.raises(TenantNotFound):
            await flow.login("alice", PASSWORD, "no-such-school")

    async def test_disabled_account_rejected(self, flow, alice, store):
        alice.is_active = False
        store.save(alice)
        with pytest.raises(AccountDisabled):
            await flow.login("alice", PASSWORD, "school-a")

    async def test_unverified_email_blocks_before_password_check(
        self, flow, store, create_identity
    ):
        """Unverified logins fail with EmailNotVerified and never touch the counter."""
        bob = create_identity(store, username="bob", email="bob@school-a.edu", verified=False)

        with pytest.raises(EmailNotVerified):
            await flow.login("bob", PASSWORD, "school-a")
        with pytest.raises(EmailNotVerified):
            await flow.login("bob", "wrong-password", "school-a")
        assert store.get_identity(bob.id).failed_attempts == 0


class TestLoginLockout:
    async def test_fifth_failure_locks_and_sixth_reports_locked(
        self, flow, alice, store, dispatcher, recording_email
    ):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await flow.login("alice", "wrong-password", "school-a")
        assert store.get_identity(alice.id).locked_until is None

        with pytest.raises(InvalidCredentials):
            await flow.login("alice", "wrong-password", "school-a")
        assert store.get_identity(alice.id).locked_until is not None

        with pytest.raises(AccountLocked):
            await flow.login("alice", PASSWORD, "school-a")
        assert store.get_identity(alice.id).failed_attempts == 5

        assert dispatcher.drain(timeout=5)
        locked = recording_email.of_kind("locked")
        assert len(locked) == 1
        assert locked[0][2] == (30,)

    async def test_lazy_unlock_after_lock_window(self, flow, alice, store, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                await flow.login("alice", "wrong-password", "school-a")
        clock.advance(minutes=31)

        result = await flow.login("alice", PASSWORD, "school-a")
        assert result.identity.id == alice.id
        stored = store.get_identity(alice.id)
        assert stored.failed_attempts == 0
        assert stored.locked_until is None

    async def test_success_resets_counter(self, flow, alice, store):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await flow.login("alice", "wrong-password", "school-a")
        await flow.login("alice", PASSWORD, "school-a")
        assert store.get_identity(alice.id).failed_attempts == 0

    async def test_concurrent_failures_are_all_counted(self, flow, alice, store):
        attempts = [flow.login("alice", "wrong-password", "school-a") for _ in range(8)]
        results = await asyncio.gather(*attempts, return_exceptions=True)

        assert all(isinstance(r, InvalidCredentials) for r in results)
        stored = store.get_identity(alice.id)
        assert stored.failed_attempts == 8
        assert stored.locked_until is not None

    async def test_counter_write_failure_is_not_a_success(
        self, settings, clock, passwords, dispatcher, create_identity
    ):
        class FailingCounterStore(MemoryStore):
            def increment_failed_attempts(self, identity_id):
                raise RuntimeError("database unavailable")

        store = _seed_tenants(FailingCounterStore())
        create_identity(store, password=PASSWORD)
        flow = build_flow(store, settings, clock, passwords, dispatcher)

        with pytest.raises(InvalidCredentials):
            await flow.login("alice", "wrong-password", "school-a")


class TestTenantIsolation:
    async def test_concurrent_logins_never_observe_other_tenant(
        self, settings, clock, dispatcher, create_identity
    ):
        observed = []

        class ObservingStore(MemoryStore):
            def find_by_username_or_email(self, tenant_id, identifier):
                observed.append((tenant_id, tenancy.get_current_tenant()))
                return super().find_by_username_or_email(tenant_id, identifier)

        hash_tenant = {}

        class ObservingPasswords(PasswordService):
            def verify(self, stored_hash, algo, password):
                observed.append((hash_tenant[stored_hash], tenancy.get_current_tenant()))
                return super().verify(stored_hash, algo, password)

        store = _seed_tenants(ObservingStore())
        passwords = ObservingPasswords()
        for tenant_id in ("school-a", "school-b"):
            identity = create_identity(
                store, tenant_id=tenant_id, email=f"alice@{tenant_id}.edu", password=PASSWORD
            )
            hash_tenant[identity.password_hash] = tenant_id
        flow = build_flow(store, settings, clock, passwords, dispatcher)

        calls = []
        for i in range(6):
            tenant_id = "school-a" if i % 2 == 0 else "school-b"
            calls.append(flow.login("alice", PASSWORD, tenant_id))
        results = await asyncio.gather(*calls)

        assert [r.identity.tenant_id for r in results] == ["school-a", "school-b"] * 3
        assert observed
        assert all(expected == seen for expected, seen in observed)
        assert tenancy.get_current_tenant() is None


class TestRefresh:
    async def test_refresh_returns_same_refresh_token(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        refreshed = await flow.refresh(login.refresh_token)

        assert refreshed.refresh_token == login.refresh_token
        assert refreshed.access_token != login.access_token
        ctx = await flow.authenticate(f"Bearer {refreshed.access_token}")
        assert ctx.identity_id == alice.id
        assert ctx.tenant_id == "school-a"

    async def test_access_token_cannot_refresh(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        with pytest.raises(InvalidOrExpiredToken):
            await flow.refresh(login.access_token)

    async def test_refresh_uses_current_role(self, flow, alice, store):
        login = await flow.login("alice", PASSWORD, "school-a")
        alice.role = Role.TEACHER
        store.save(alice)
        refreshed = await flow.refresh(login.refresh_token)
        assert flow.tokens.validate(refreshed.access_token, TokenKind.ACCESS).role is Role.TEACHER

    async def test_revoked_refresh_token_rejected(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        await flow.logout(login.access_token, login.refresh_token)
        with pytest.raises(InvalidOrExpiredToken):
            await flow.refresh(login.refresh_token)

    async def test_expired_refresh_token_rejected(self, flow, alice, clock):
        login = await flow.login("alice", PASSWORD, "school-a")
        clock.advance(days=1)
        with pytest.raises(InvalidOrExpiredToken):
            await flow.refresh(login.refresh_token)

    async def test_disabled_or_locked_identity_cannot_refresh(self, flow, alice, store, clock):
        login = await flow.login("alice", PASSWORD, "school-a")
        store.lock_until(alice.id, clock.now + timedelta(minutes=5))
        with pytest.raises(AccountLocked):
            await flow.refresh(login.refresh_token)
        store.unlock(alice.id)
        stored = store.get_identity(alice.id)
        stored.status = IdentityStatus.SUSPENDED
        store.save(stored)
        with pytest.raises(AccountDisabled):
            await flow.refresh(login.refresh_token)


class TestLogoutAndAuthenticate:
    async def test_logout_revokes_access_token(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        assert (await flow.authenticate(login.access_token)).role is Role.STUDENT

        await flow.logout(f"Bearer {login.access_token}")
        with pytest.raises(InvalidOrExpiredToken):
            await flow.authenticate(f"Bearer {login.access_token}")

    async def test_logout_twice_is_safe(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        await flow.logout(login.access_token)
        await flow.logout(login.access_token)
        assert await flow.revocations.is_revoked(login.access_token) is True

    async def test_logout_without_refresh_keeps_refresh_usable(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        await flow.logout(login.access_token)
        assert (await flow.refresh(login.refresh_token)).refresh_token == login.refresh_token

    async def test_logout_ignores_invalid_tokens(self, flow):
        await flow.logout("not-a-token")
        await flow.logout(None)

    async def test_refresh_token_not_accepted_as_bearer(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        with pytest.raises(InvalidOrExpiredToken):
            await flow.authenticate(login.refresh_token)

    async def test_missing_bearer_rejected(self, flow):
        with pytest.raises(InvalidOrExpiredToken):
            await flow.authenticate(None)

    async def test_bearer_rejected_under_another_tenant(self, flow, alice):
        login = await flow.login("alice", PASSWORD, "school-a")
        with tenancy.tenant_scope("school-b"):
            with pytest.raises(TenantMismatch) as exc_info:
                await flow.authenticate(login.access_token)
        assert exc_info.value.status_code == 403
        assert exc_info.value.error_code == "invalid_tenant"
        with tenancy.tenant_scope("school-a"):
            assert (await flow.authenticate(login.access_token)).tenant_id == "school-a"


class TestLogoutWithClockSkew:
    @pytest.fixture
    def skewed_flow(self, store, settings, clock, passwords, dispatcher):
        skewed = settings.model_copy(update={"jwt_clock_skew_seconds": 120})
        return build_flow(store, skewed, clock, passwords, dispatcher)

    async def test_revocation_outlives_expiry_by_the_leeway(self, skewed_flow, alice, clock):
        login = await skewed_flow.login("alice", PASSWORD, "school-a")
        await skewed_flow.logout(login.access_token)

        clock.advance(minutes=15, seconds=30)
        with pytest.raises(InvalidOrExpiredToken):
            await skewed_flow.authenticate(login.access_token)

    async def test_logout_inside_leeway_window_is_recorded(self, skewed_flow, alice, clock):
        login = await skewed_flow.login("alice", PASSWORD, "school-a")
        clock.advance(minutes=15, seconds=30)
        assert (await skewed_flow.authenticate(login.access_token)).identity_id == alice.id

        await skewed_flow.logout(login.access_token)
        assert await skewed_flow.revocations.is_revoked(login.access_token) is True
        with pytest.raises(InvalidOrExpiredToken):
            await skewed_flow.authenticate(login.access_token)


class TestRegistration:
    async def test_register_creates_pending_identity(self, flow, store, dispatcher, recording_email):
        identity = await flow.register(
            username="carol",
            email="carol@school-a.edu",
            password=PASSWORD,
            role="teacher",
            first_name="Carol",
            tenant_id="school-a",
        )

        assert identity.status == IdentityStatus.PENDING
        assert identity.email_verified is False
        assert identity.role is Role.TEACHER
        assert identity.email_verification_token
        assert dispatcher.drain(timeout=5)
        sent = recording_email.of_kind("verification")
        assert [entry[1].id for entry in sent] == [identity.id]

        with pytest.raises(EmailNotVerified):
            await flow.login("carol", PASSWORD, "school-a")

        verified = await flow.verify_email(identity.email_verification_token)
        assert verified.status == IdentityStatus.ACTIVE
        assert (await flow.login("carol", PASSWORD, "school-a")).identity.id == identity.id

    async def test_verification_token_is_single_use(self, flow):
        identity = await flow.register(
            username="carol", email="carol@school-a.edu", password=PASSWORD, tenant_id="school-a"
        )
        await flow.verify_email(identity.email_verification_token)
        with pytest.raises(InvalidOrExpiredToken):
            await flow.verify_email(identity.email_verification_token)

    async def test_duplicate_username_or_email_conflicts(self, flow, alice):
        with pytest.raises(ConflictError):
            await flow.register(
                username="alice", email="new@school-a.edu", password=PASSWORD, tenant_id="school-a"
            )
        with pytest.raises(ConflictError):
            await flow.register(
                username="alice2", email="ALICE@school-a.edu", password=PASSWORD, tenant_id="school-a"
            )

    async def test_same_username_in_other_tenant_allowed(self, flow, alice):
        identity = await flow.register(
            username="alice", email="alice@school-b.edu", password=PASSWORD, tenant_id="school-b"
        )
        assert identity.tenant_id == "school-b"

    async def test_invalid_role_rejected(self, flow):
        with pytest.raises(InvalidRole):
            await flow.register(
                username="dave", email="dave@school-a.edu", password=PASSWORD,
                role="janitor", tenant_id="school-a",
            )

    async def test_register_into_inactive_tenant_rejected(self, flow):
        with pytest.raises(TenantNotFound):
            await flow.register(
                username="dave", email="dave@closed.edu", password=PASSWORD, tenant_id="closed"
            )

    async def test_resend_rotates_verification_token(self, flow, dispatcher, recording_email):
        identity = await flow.register(
            username="carol", email="carol@school-a.edu", password=PASSWORD, tenant_id="school-a"
        )
        await flow.resend_verification("carol@school-a.edu", "school-a")
        assert dispatcher.drain(timeout=5)
        tokens = [entry[1].email_verification_token for entry in recording_email.of_kind("verification")]
        assert len(tokens) == 2
        assert tokens[0] == identity.email_verification_token
        assert tokens[1] != tokens[0]

        with pytest.raises(InvalidOrExpiredToken):
            await flow.verify_email(tokens[0])
        await flow.verify_email(tokens[1])

    async def test_resend_is_silent_for_unknown_or_verified(self, flow, alice, dispatcher, recording_email):
        await flow.resend_verification("nobody@school-a.edu", "school-a")
        await flow.resend_verification("alice@school-a.edu", "school-a")
        assert dispatcher.drain(timeout=5)
        assert recording_email.of_kind("verification") == []


class TestPasswordReset:
    async def _request_token(self, flow, dispatcher, recording_email, email="alice@school-a.edu"):
        await flow.initiate_password_reset(email)
        assert dispatcher.drain(timeout=5)
        resets = recording_email.of_kind("reset")
        assert len(resets) == 1
        token, expiry_minutes = resets[0][2]
        assert expiry_minutes == 60
        return token

    async def test_reset_replaces_password(self, flow, alice, dispatcher, recording_email):
        token = await self._request_token(flow, dispatcher, recording_email)
        await flow.reset_password(token, "BrandNewPass9!")

        with pytest.raises(InvalidCredentials):
            await flow.login("alice", PASSWORD, "school-a")
        assert (await flow.login("alice", "BrandNewPass9!", "school-a")).identity.id == alice.id
        assert dispatcher.drain(timeout=5)
        assert len(recording_email.of_kind("password_changed")) == 1

    async def test_reset_token_is_single_use(self, flow, alice, dispatcher, recording_email):
        token = await self._request_token(flow, dispatcher, recording_email)
        await flow.reset_password(token, "FirstNewPass1!")
        with pytest.raises(InvalidOrExpiredToken):
            await flow.reset_password(token, "SecondNewPass2!")
        assert (await flow.login("alice", "FirstNewPass1!", "school-a")).identity.id == alice.id

    async def test_reset_token_expires_after_an_hour(self, flow, alice, clock, dispatcher, recording_email):
        token = await self._request_token(flow, dispatcher, recording_email)
        clock.advance(minutes=60)
        with pytest.raises(InvalidOrExpiredToken):
            await flow.reset_password(token, "TooLatePass1!")

    async def test_unknown_email_is_silent(self, flow, dispatcher, recording_email):
        assert await flow.initiate_password_reset("nobody@school-a.edu") is None
        assert dispatcher.drain(timeout=5)
        assert recording_email.sent == []

    async def test_tenant_scoped_lookup(self, flow, alice, dispatcher, recording_email):
        await flow.initiate_password_reset("alice@school-a.edu", tenant_id="school-b")
        assert dispatcher.drain(timeout=5)
        assert recording_email.sent == []
        await flow.initiate_password_reset("alice@school-a.edu", tenant_id="school-a")
        assert dispatcher.drain(timeout=5)
        assert len(recording_email.of_kind("reset")) == 1

    async def test_failed_reset_write_keeps_token_usable(
        self, flow, alice, store, monkeypatch, dispatcher, recording_email
    ):
        token = await self._request_token(flow, dispatcher, recording_email)

        def broken(*args, **kwargs):
            raise RuntimeError("connection reset by peer")

        monkeypatch.setattr(store, "reset_password_with_token", broken)
        with pytest.raises(RuntimeError):
            await flow.reset_password(token, "BrandNewPass9!")
        monkeypatch.undo()

        stored = store.get_identity(alice.id)
        assert stored.password_reset_token == token
        assert stored.password_hash == alice.password_hash
        await flow.reset_password(token, "BrandNewPass9!")
        assert (await flow.login("alice", "BrandNewPass9!", "school-a")).identity.id == alice.id

    async def test_reset_is_a_single_store_write(
        self, flow, alice, store, monkeypatch, dispatcher, recording_email
    ):
        token = await self._request_token(flow, dispatcher, recording_email)

        def unexpected(*args, **kwargs):
            raise AssertionError("reset must not take a second write")

        monkeypatch.setattr(store, "update_password", unexpected)
        monkeypatch.setattr(store, "consume_reset_token", unexpected)
        await flow.reset_password(token, "BrandNewPass9!")
        assert store.get_identity(alice.id).password_reset_token is None

    async def test_tenant_lookup_matches_email_not_username(
        self, flow, store, create_identity, dispatcher, recording_email
    ):
        create_identity(
            store, username="dana@school-a.edu", email="someone-else@school-a.edu"
        )
        owner = create_identity(store, username="dana", email="dana@school-a.edu")

        await flow.initiate_password_reset("dana@school-a.edu", tenant_id="school-a")
        assert dispatcher.drain(timeout=5)
        resets = recording_email.of_kind("reset")
        assert [identity.id for _, identity, _ in resets] == [owner.id]


class TestChangePassword:
    async def test_change_requires_current_password(self, flow, alice):
        with pytest.raises(InvalidCredentials):
            await flow.change_password(alice.id, "not-my-password", "BrandNewPass9!")

    async def test_change_password(self, flow, alice, store, clock, dispatcher, recording_email):
        await flow.change_password(alice.id, PASSWORD, "BrandNewPass9!")
        assert store.get_identity(alice.id).last_password_change_at == clock.now
        assert (await flow.login("alice", "BrandNewPass9!", "school-a")).identity.id == alice.id
        assert dispatcher.drain(timeout=5)
        assert len(recording_email.of_kind("password_changed")) == 1


@pytest.mark.parametrize(
    "raw,expected",
    [("Bearer abc", "abc"), ("bearer abc ", "abc"), ("abc", "abc"), ("", ""), (None, "")],
)
def test_strip_bearer(raw, expected):
    assert strip_bearer(raw) == expected
