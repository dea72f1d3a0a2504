from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Identity, IdentityStatus, Tenant


class MemoryStore:
    """In-memory credential store and tenant registry for tests and local runs.

    Every read and mutation runs under a single RLock, which makes each
    mutator atomic with respect to the row it touches. Rows handed out are
    copies; callers mutate state only through the store's methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.identities: Dict[str, Identity] = {}
        self._data_lock = threading.RLock()

    # tenants
    def create_tenant(
        self,
        tenant_id: str,
        name: str,
        *,
        subdomain: Optional[str] = None,
        is_active: bool = True,
    ) -> Tenant:
        with self._data_lock:
            if tenant_id in self.tenants:
                raise ConstraintViolation("tenant already exists", {"field": "id"})
            if subdomain and any(
                t.subdomain == subdomain for t in self.tenants.values()
            ):
                raise ConstraintViolation(
                    "subdomain already exists", {"field": "subdomain"}
                )
            tenant = Tenant(
                id=tenant_id, name=name, subdomain=subdomain, is_active=is_active
            )
            self.tenants[tenant_id] = tenant
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = next(
                (t for t in self.tenants.values() if t.subdomain == subdomain), None
            )
            return replace(tenant) if tenant else None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.is_active = is_active
            return replace(tenant)

    # identities
    def _check_unique(self, identity: Identity) -> None:
        for existing in self.identities.values():
            if existing.id == identity.id or existing.tenant_id != identity.tenant_id:
                continue
            if existing.username == identity.username:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if existing.email.lower() == identity.email.lower():
                raise ConstraintViolation("email already exists", {"field": "email"})

    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            if identity.id in self.identities:
                raise ConstraintViolation("identity already exists", {"field": "id"})
            self._check_unique(identity)
            self.identities[identity.id] = replace(identity)
            return replace(identity)

    def save(self, identity: Identity) -> Identity:
        with self._data_lock:
            self._check_unique(identity)
            self.identities[identity.id] = replace(identity)
            return replace(identity)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            return replace(identity) if identity else None

    def find_by_username_or_email(
        self, tenant_id: str, identifier: str
    ) -> Optional[Identity]:
        lowered = identifier.lower()
        with self._data_lock:
            for identity in self.identities.values():
                if identity.tenant_id != tenant_id:
                    continue
                if identity.username == identifier or identity.email.lower() == lowered:
                    return replace(identity)
            return None

    def find_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Identity]:
        lowered = email.lower()
        with self._data_lock:
            matches = [
                i
                for i in self.identities.values()
                if i.email.lower() == lowered
                and (tenant_id is None or i.tenant_id == tenant_id)
            ]
        if len(matches) > 1:
            self.logger.warning(
                "email_lookup_ambiguous", tenant_count=len(matches)
            )
            return None
        return replace(matches[0]) if matches else None

    def list_identities(self, tenant_id: str, limit: int = 100) -> List[Identity]:
        with self._data_lock:
            results = [
                replace(i) for i in self.identities.values() if i.tenant_id == tenant_id
            ]
        return sorted(results, key=lambda i: i.created_at)[:limit]

    # lockout counters
    def increment_failed_attempts(self, identity_id: str) -> int:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return 0
            identity.failed_attempts += 1
            return identity.failed_attempts

    def reset_failed_attempts(self, identity_id: str) -> None:
        """Zero the counter; any lock is left for unlock() to clear."""
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.failed_attempts = 0

    def lock_until(self, identity_id: str, until: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.locked_until = until

    def unlock(self, identity_id: str, *, expired_before: Optional[datetime] = None) -> bool:
        """Clear the lock and counter.

        With ``expired_before`` the unlock only applies to a lock that ended at
        or before that instant, so a concurrent fresh lock is left untouched.
        """
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return False
            if expired_before is not None and (
                identity.locked_until is None or identity.locked_until > expired_before
            ):
                return False
            identity.locked_until = None
            identity.failed_attempts = 0
            return True

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.last_login_at = at

    # single-use tokens
    def set_reset_token(self, identity_id: str, token: str, expiry: datetime) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.password_reset_token = token
                identity.password_reset_expiry = expiry

    def consume_reset_token(self, token: str, now: datetime) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.password_reset_token != token:
                    continue
                if identity.password_reset_expiry is None or identity.password_reset_expiry <= now:
                    return None
                identity.password_reset_token = None
                identity.password_reset_expiry = None
                return replace(identity)
            return None

    def reset_password_with_token(
        self,
        token: str,
        now: datetime,
        password_hash: str,
        password_algo: str,
    ) -> Optional[Identity]:
        """Swap the password and burn ``token`` in one step; None if the token is not live."""
        with self._data_lock:
            identity = next(
                (i for i in self.identities.values() if i.password_reset_token == token),
                None,
            )
            if (
                identity is None
                or identity.password_reset_expiry is None
                or identity.password_reset_expiry <= now
            ):
                return None
            identity.password_hash = password_hash
            identity.password_algo = password_algo
            identity.last_password_change_at = now
            identity.password_reset_token = None
            identity.password_reset_expiry = None
            return replace(identity)

    def set_verification_token(self, identity_id: str, token: str) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.email_verification_token = token

    def consume_verification_token(self, token: str) -> Optional[Identity]:
        with self._data_lock:
            for identity in self.identities.values():
                if identity.email_verification_token != token:
                    continue
                identity.email_verification_token = None
                identity.email_verified = True
                if identity.status == IdentityStatus.PENDING:
                    identity.status = IdentityStatus.ACTIVE
                return replace(identity)
            return None

    def update_password(
        self,
        identity_id: str,
        password_hash: str,
        password_algo: str,
        changed_at: datetime,
    ) -> None:
        with self._data_lock:
            identity = self.identities.get(identity_id)
            if not identity:
                return
            identity.password_hash = password_hash
            identity.password_algo = password_algo
            identity.last_password_change_at = changed_at
            identity.password_reset_token = None
            identity.password_reset_expiry = None

    def ping(self) -> None:
        """Health check; an in-process store is always reachable."""
