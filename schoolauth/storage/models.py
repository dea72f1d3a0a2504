from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    ADMIN = "ADMIN"
    TEACHER = "TEACHER"
    STUDENT = "STUDENT"
    PARENT = "PARENT"

    @classmethod
    def parse(cls, value: "str | Role") -> "Role":
        """Parse a role name case-insensitively; raises ValueError otherwise."""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            raise ValueError(f"invalid role: {value!r}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"invalid role: {value!r}") from None


class IdentityStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


@dataclass
class Tenant:
    id: str
    name: str
    subdomain: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Identity:
    """One user credential record, unique per (tenant, username) and (tenant, email)."""

    id: str
    tenant_id: str
    username: str
    email: str
    password_hash: str
    role: Role = Role.STUDENT
    password_algo: str = "argon2id"
    first_name: str = ""
    last_name: str = ""
    status: IdentityStatus = IdentityStatus.PENDING
    is_active: bool = True
    email_verified: bool = False
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    password_reset_token: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    last_password_change_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        *,
        tenant_id: str,
        username: str,
        email: str,
        password_hash: str,
        role: Role,
        password_algo: str = "argon2id",
        first_name: str = "",
        last_name: str = "",
        status: IdentityStatus = IdentityStatus.PENDING,
        email_verified: bool = False,
        email_verification_token: Optional[str] = None,
    ) -> "Identity":
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            username=username,
            email=email,
            password_hash=password_hash,
            password_algo=password_algo,
            role=role,
            first_name=first_name,
            last_name=last_name,
            status=status,
            email_verified=email_verified,
            email_verification_token=email_verification_token,
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_locked(self, now: datetime) -> bool:
        """True while ``locked_until`` lies in the future; a past value means unlocked."""
        return self.locked_until is not None and now < self.locked_until
