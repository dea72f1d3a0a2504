from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.email import EmailDispatcher
from schoolauth.service.errors import (
    AccountDisabled,
    AccountLocked,
    ConflictError,
    EmailNotVerified,
    InvalidCredentials,
    InvalidRole,
    InvalidToken,
    TenantMismatch,
)
from schoolauth.service.lockout import LockoutPolicy, LockoutStore
from schoolauth.service.passwords import PasswordService
from schoolauth.service.revocation import RevocationStore
from schoolauth.service.tokens import Clock, TokenKind, TokenService, utcnow
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Identity, IdentityStatus, Role
from schoolauth.tenancy import (
    TenantResolver,
    get_current_tenant,
    require_current_tenant,
    tenant_scope,
)

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


class CredentialStore(LockoutStore, Protocol):
    def create_identity(self, identity: Identity) -> Identity: ...

    def save(self, identity: Identity) -> Identity: ...

    def get_identity(self, identity_id: str) -> Optional[Identity]: ...

    def find_by_username_or_email(
        self, tenant_id: str, identifier: str
    ) -> Optional[Identity]: ...

    def find_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Identity]: ...

    def list_identities(self, tenant_id: str, limit: int = 100) -> List[Identity]: ...

    def record_login(self, identity_id: str, at: datetime) -> None: ...

    def set_reset_token(self, identity_id: str, token: str, expiry: datetime) -> None: ...

    def consume_reset_token(self, token: str, now: datetime) -> Optional[Identity]: ...

    def reset_password_with_token(
        self, token: str, now: datetime, password_hash: str, password_algo: str
    ) -> Optional[Identity]: ...

    def set_verification_token(self, identity_id: str, token: str) -> None: ...

    def consume_verification_token(self, token: str) -> Optional[Identity]: ...

    def update_password(
        self,
        identity_id: str,
        password_hash: str,
        password_algo: str,
        changed_at: datetime,
    ) -> None: ...


@dataclass
class AuthContext:
    identity_id: str
    tenant_id: str
    role: Role
    token_id: str = ""


@dataclass
class AuthResult:
    identity: Identity
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


def strip_bearer(value: Optional[str]) -> str:
    if not value:
        return ""
    value = value.strip()
    if value[: len(BEARER_PREFIX)].lower() == BEARER_PREFIX.lower():
        value = value[len(BEARER_PREFIX):]
    return value.strip()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.lower().encode()).hexdigest()


def _new_single_use_token() -> str:
    return secrets.token_urlsafe(32)


def _is_disabled(identity: Identity) -> bool:
    return not identity.is_active or identity.status in (
        IdentityStatus.INACTIVE,
        IdentityStatus.SUSPENDED,
    )


class AuthenticationFlow:
    """Login, token lifecycle, registration and single-use token flows.

    Every operation that touches tenant-scoped records runs inside
    :func:`tenant_scope`, so the tenant context is restored on every exit
    path. Email side effects go through :class:`EmailDispatcher` and never
    fail the calling operation.
    """

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenService,
        revocations: RevocationStore,
        lockout: LockoutPolicy,
        passwords: PasswordService,
        email: EmailDispatcher,
        settings: Settings,
        *,
        tenant_resolver: Optional[TenantResolver] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.revocations = revocations
        self.lockout = lockout
        self.passwords = passwords
        self.email = email
        self.settings = settings
        self.tenant_resolver = tenant_resolver
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _validate_tenant(self, tenant_id: str) -> str:
        if self.tenant_resolver is None:
            return tenant_id
        return self.tenant_resolver.validate(tenant_id)

    async def _verify_password(self, identity: Identity, password: str) -> bool:
        return await asyncio.to_thread(
            self.passwords.verify, identity.password_hash, identity.password_algo, password
        )

    async def _hash_password(self, password: str) -> tuple[str, str]:
        return await asyncio.to_thread(self.passwords.hash, password)

    def _issue(self, identity: Identity, refresh_token: Optional[str] = None) -> AuthResult:
        access = self.tokens.issue(
            identity, identity.tenant_id, identity.role, TokenKind.ACCESS
        )
        if refresh_token is None:
            refresh_token = self.tokens.issue(
                identity, identity.tenant_id, identity.role, TokenKind.REFRESH
            )
        return AuthResult(
            identity=identity,
            access_token=access,
            refresh_token=refresh_token,
            expires_in=int(self.tokens.access_ttl.total_seconds()),
        )

    async def login(
        self, identifier: str, password: str, tenant_id: Optional[str] = None
    ) -> AuthResult:
        """Authenticate ``identifier`` (username or email) within a tenant.

        Checks run in a fixed order: tenant, identity lookup, lock window,
        email verification, then the password. An unverified account is
        rejected before its password is checked and its failure counter is
        left untouched.
        """
        tenant_id = tenant_id or require_current_tenant()
        with tenant_scope(tenant_id):
            tenant_id = self._validate_tenant(tenant_id)
            identity = self.store.find_by_username_or_email(tenant_id, identifier.strip())
            if identity is None:
                self.logger.info("login_unknown_identifier")
                raise InvalidCredentials()

            identity = self.lockout.check(identity)

            if not identity.email_verified:
                self.logger.info("login_blocked_email_unverified", identity_id=identity.id)
                raise EmailNotVerified()

            if not await self._verify_password(identity, password):
                await self._record_failure(identity)
                raise InvalidCredentials()

            if _is_disabled(identity):
                self.logger.warning("login_blocked_account_disabled", identity_id=identity.id)
                raise AccountDisabled("account is disabled")

            self.lockout.record_success(identity)
            now = self._now()
            self.store.record_login(identity.id, now)
            identity.last_login_at = now
            result = self._issue(identity)
            self.logger.info("login_succeeded", identity_id=identity.id, role=identity.role.value)
            return result

    async def _record_failure(self, identity: Identity) -> None:
        try:
            outcome = self.lockout.record_failure(identity)
        except Exception as exc:
            self.logger.error(
                "lockout_increment_failed", identity_id=identity.id, error=str(exc)
            )
            raise InvalidCredentials() from exc
        if outcome.locked:
            self.email.send_account_locked_email(identity, self.lockout.lockout_minutes)

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Mint a new access token; the refresh token is returned unchanged."""
        refresh_token = strip_bearer(refresh_token)
        claims = self.tokens.validate(refresh_token, TokenKind.REFRESH)
        if await self.revocations.is_revoked(refresh_token):
            self.logger.info("refresh_token_revoked", identity_id=claims.subject)
            raise InvalidToken("token revoked")
        with tenant_scope(claims.tenant_id):
            self._validate_tenant(claims.tenant_id)
            identity = self.store.get_identity(claims.subject)
            if identity is None or identity.tenant_id != claims.tenant_id:
                self.logger.warning("refresh_identity_missing", identity_id=claims.subject)
                raise InvalidToken()
            if _is_disabled(identity):
                raise AccountDisabled("account is disabled")
            if identity.is_locked(self._now()):
                raise AccountLocked(
                    "account is locked; try again later",
                    detail={"locked_until": identity.locked_until.isoformat()},
                )
            result = self._issue(identity, refresh_token=refresh_token)
            self.logger.info("token_refreshed", identity_id=identity.id)
            return result

    async def authenticate(self, bearer: Optional[str]) -> AuthContext:
        """Validate a bearer access token and check it against the denylist.

        When the request is already bound to a tenant, the token must have
        been issued for that tenant.
        """
        token = strip_bearer(bearer)
        if not token:
            raise InvalidToken("missing bearer token")
        claims = self.tokens.validate(token, TokenKind.ACCESS)
        if await self.revocations.is_revoked(token):
            self.logger.info("access_token_revoked", identity_id=claims.subject)
            raise InvalidToken("token revoked")
        bound_tenant = get_current_tenant()
        if bound_tenant is not None and bound_tenant != claims.tenant_id:
            self.logger.warning(
                "access_token_tenant_mismatch",
                identity_id=claims.subject,
                token_tenant=claims.tenant_id,
            )
            raise TenantMismatch()
        return AuthContext(
            identity_id=claims.subject,
            tenant_id=claims.tenant_id,
            role=claims.role,
            token_id=claims.token_id,
        )

    async def logout(
        self, access_token: Optional[str], refresh_token: Optional[str] = None
    ) -> None:
        """Revoke the presented tokens.

        Repeating a logout is harmless; tokens that fail validation are
        already unusable and are skipped.
        """
        pairs = [(strip_bearer(access_token), TokenKind.ACCESS)]
        if refresh_token:
            pairs.append((strip_bearer(refresh_token), TokenKind.REFRESH))
        for token, kind in pairs:
            if not token:
                continue
            try:
                claims = self.tokens.validate(token, kind)
            except InvalidToken:
                self.logger.debug("logout_token_ignored", kind=kind.value)
                continue
            # Held until validate() stops admitting the token
            await self.revocations.revoke(token, expires_at=claims.accepted_until)
            self.logger.info("logout", identity_id=claims.subject, kind=kind.value)

    async def register(
        self,
        *,
        username: str,
        email: str,
        password: str,
        role: "str | Role" = Role.STUDENT,
        first_name: str = "",
        last_name: str = "",
        tenant_id: Optional[str] = None,
    ) -> Identity:
        tenant_id = tenant_id or require_current_tenant()
        try:
            parsed_role = Role.parse(role)
        except ValueError as exc:
            raise InvalidRole(str(exc), detail={"field": "role"}) from None
        with tenant_scope(tenant_id):
            tenant_id = self._validate_tenant(tenant_id)
            if self.store.find_by_username_or_email(tenant_id, username) is not None:
                raise ConflictError("username already exists", detail={"field": "username"})
            if self.store.find_by_email(email, tenant_id=tenant_id) is not None:
                raise ConflictError("email already exists", detail={"field": "email"})
            password_hash, algo = await self._hash_password(password)
            identity = Identity.new(
                tenant_id=tenant_id,
                username=username,
                email=email,
                password_hash=password_hash,
                password_algo=algo,
                role=parsed_role,
                first_name=first_name,
                last_name=last_name,
                status=IdentityStatus.PENDING,
                email_verified=False,
                email_verification_token=_new_single_use_token(),
            )
            try:
                identity = self.store.create_identity(identity)
            except ConstraintViolation as exc:
                raise ConflictError(exc.message, detail=exc.detail) from exc
            self.email.send_email_verification(identity)
            self.logger.info(
                "identity_registered", identity_id=identity.id, role=parsed_role.value
            )
            return identity

    async def verify_email(self, token: str) -> Identity:
        identity = self.store.consume_verification_token(token) if token else None
        if identity is None:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            raise InvalidToken()
        self.logger.info("email_verified", identity_id=identity.id)
        return identity

    async def resend_verification(self, email: str, tenant_id: Optional[str] = None) -> None:
        tenant_id = tenant_id or require_current_tenant()
        with tenant_scope(tenant_id):
            identity = self.store.find_by_email(email, tenant_id=tenant_id)
            if identity is None or identity.email_verified:
                self.logger.info("verification_resend_skipped", email_hash=_email_hash(email))
                return
            token = _new_single_use_token()
            self.store.set_verification_token(identity.id, token)
            identity.email_verification_token = token
            self.email.send_email_verification(identity)
            self.logger.info("verification_resent", identity_id=identity.id)

    async def initiate_password_reset(
        self, email: str, tenant_id: Optional[str] = None
    ) -> None:
        """Send a reset link when the account exists; silent otherwise."""
        if tenant_id:
            with tenant_scope(tenant_id):
                identity = self.store.find_by_email(email, tenant_id=tenant_id)
        else:
            identity = self.store.find_by_email(email)
        if identity is None or _is_disabled(identity):
            self.logger.info("password_reset_unknown_email", email_hash=_email_hash(email))
            return
        ttl_minutes = self.settings.password_reset_ttl_minutes
        token = _new_single_use_token()
        with tenant_scope(identity.tenant_id):
            self.store.set_reset_token(
                identity.id, token, self._now() + timedelta(minutes=ttl_minutes)
            )
            self.email.send_password_reset_email(identity, token, ttl_minutes)
        self.logger.info("password_reset_requested", identity_id=identity.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        password_hash, algo = await self._hash_password(new_password)
        identity = (
            self.store.reset_password_with_token(token, self._now(), password_hash, algo)
            if token
            else None
        )
        if identity is None:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            raise InvalidToken()
        with tenant_scope(identity.tenant_id):
            self.email.send_password_change_confirmation(identity)
        self.logger.info("password_reset_completed", identity_id=identity.id)

    async def change_password(
        self, identity_id: str, current_password: str, new_password: str
    ) -> None:
        identity = self.store.get_identity(identity_id)
        if identity is None:
            raise InvalidCredentials()
        with tenant_scope(identity.tenant_id):
            if not await self._verify_password(identity, current_password):
                self.logger.warning("password_change_rejected", identity_id=identity.id)
                raise InvalidCredentials("current password is incorrect")
            password_hash, algo = await self._hash_password(new_password)
            self.store.update_password(identity.id, password_hash, algo, self._now())
            self.email.send_password_change_confirmation(identity)
        self.logger.info("password_changed", identity_id=identity.id)
