from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Identity, IdentityStatus, Role, Tenant

_IDENTITY_COLUMNS = (
    "id",
    "tenant_id",
    "username",
    "email",
    "password_hash",
    "password_algo",
    "role",
    "first_name",
    "last_name",
    "status",
    "is_active",
    "email_verified",
    "failed_attempts",
    "locked_until",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expiry",
    "last_login_at",
    "last_password_change_at",
    "created_at",
)

_CONSTRAINT_FIELDS = {
    "uk_identity_tenant_username": "username",
    "uk_identity_tenant_email": "email",
    "app_identity_pkey": "id",
    "tenant_pkey": "id",
    "tenant_subdomain_key": "subdomain",
}


def _identity_from_row(row: Dict[str, Any]) -> Identity:
    return Identity(
        id=str(row["id"]),
        tenant_id=row["tenant_id"],
        username=row["username"],
        email=row["email"],
        password_hash=row["password_hash"],
        password_algo=row.get("password_algo") or "argon2id",
        role=Role(row["role"]),
        first_name=row.get("first_name") or "",
        last_name=row.get("last_name") or "",
        status=IdentityStatus(row.get("status") or IdentityStatus.PENDING.value),
        is_active=row.get("is_active", True),
        email_verified=row.get("email_verified", False),
        failed_attempts=row.get("failed_attempts") or 0,
        locked_until=row.get("locked_until"),
        email_verification_token=row.get("email_verification_token"),
        password_reset_token=row.get("password_reset_token"),
        password_reset_expiry=row.get("password_reset_expiry"),
        last_login_at=row.get("last_login_at"),
        last_password_change_at=row.get("last_password_change_at"),
        created_at=row["created_at"],
    )


def _tenant_from_row(row: Dict[str, Any]) -> Tenant:
    return Tenant(
        id=row["id"],
        name=row["name"],
        subdomain=row.get("subdomain"),
        is_active=row.get("is_active", True),
        created_at=row["created_at"],
    )


def _identity_params(identity: Identity) -> tuple:
    return (
        identity.id,
        identity.tenant_id,
        identity.username,
        identity.email,
        identity.password_hash,
        identity.password_algo,
        identity.role.value,
        identity.first_name,
        identity.last_name,
        identity.status.value,
        identity.is_active,
        identity.email_verified,
        identity.failed_attempts,
        identity.locked_until,
        identity.email_verification_token,
        identity.password_reset_token,
        identity.password_reset_expiry,
        identity.last_login_at,
        identity.last_password_change_at,
        identity.created_at,
    )


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _CONSTRAINT_FIELDS.get(constraint, "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed credential store and tenant registry.

    Counter, lock and single-use token mutations are single conditional
    UPDATE statements, so concurrent requests against one row serialize on
    the row lock instead of racing through read-then-write.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        """Ensure the identity tables exist before serving requests."""

        required_tables = ["tenant", "app_identity"]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    # tenants
    def create_tenant(
        self,
        tenant_id: str,
        name: str,
        *,
        subdomain: Optional[str] = None,
        is_active: bool = True,
    ) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant (id, name, subdomain, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (tenant_id, name, subdomain, is_active),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return _tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE id = %s", (tenant_id,)
            ).fetchone()
        return _tenant_from_row(row) if row else None

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE subdomain = %s", (subdomain,)
            ).fetchone()
        return _tenant_from_row(row) if row else None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, tenant_id),
            ).fetchone()
        return _tenant_from_row(row) if row else None

    # identities
    def create_identity(self, identity: Identity) -> Identity:
        columns = ", ".join(_IDENTITY_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_IDENTITY_COLUMNS))
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"INSERT INTO app_identity ({columns}) VALUES ({placeholders}) RETURNING *",
                    _identity_params(identity),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return _identity_from_row(row)

    def save(self, identity: Identity) -> Identity:
        columns = ", ".join(_IDENTITY_COLUMNS)
        placeholders = ", ".join(["%s"] * len(_IDENTITY_COLUMNS))
        updates = ", ".join(
            f"{col} = EXCLUDED.{col}" for col in _IDENTITY_COLUMNS if col != "id"
        )
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO app_identity ({columns}) VALUES ({placeholders})
                    ON CONFLICT (id) DO UPDATE SET {updates}
                    RETURNING *
                    """,
                    _identity_params(identity),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return _identity_from_row(row)

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_identity WHERE id = %s", (identity_id,)
            ).fetchone()
        return _identity_from_row(row) if row else None

    def find_by_username_or_email(
        self, tenant_id: str, identifier: str
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_identity
                WHERE tenant_id = %s AND (username = %s OR lower(email) = lower(%s))
                ORDER BY (username = %s) DESC
                LIMIT 1
                """,
                (tenant_id, identifier, identifier, identifier),
            ).fetchone()
        return _identity_from_row(row) if row else None

    def find_by_email(
        self, email: str, *, tenant_id: Optional[str] = None
    ) -> Optional[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM app_identity
                WHERE lower(email) = lower(%s) AND (%s::text IS NULL OR tenant_id = %s)
                LIMIT 2
                """,
                (email, tenant_id, tenant_id),
            ).fetchall()
        if len(rows) > 1:
            self.logger.warning("email_lookup_ambiguous", tenant_count=len(rows))
            return None
        return _identity_from_row(rows[0]) if rows else None

    def list_identities(self, tenant_id: str, limit: int = 100) -> List[Identity]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_identity WHERE tenant_id = %s ORDER BY created_at LIMIT %s",
                (tenant_id, limit),
            ).fetchall()
        return [_identity_from_row(row) for row in rows]

    # lockout counters
    def increment_failed_attempts(self, identity_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_identity SET failed_attempts = failed_attempts + 1
                WHERE id = %s
                RETURNING failed_attempts
                """,
                (identity_id,),
            ).fetchone()
        return row["failed_attempts"] if row else 0

    def reset_failed_attempts(self, identity_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_identity SET failed_attempts = 0 WHERE id = %s",
                (identity_id,),
            )

    def lock_until(self, identity_id: str, until: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_identity SET locked_until = %s WHERE id = %s",
                (until, identity_id),
            )

    def unlock(self, identity_id: str, *, expired_before: Optional[datetime] = None) -> bool:
        with self._connect() as conn:
            if expired_before is None:
                row = conn.execute(
                    """
                    UPDATE app_identity SET failed_attempts = 0, locked_until = NULL
                    WHERE id = %s
                    RETURNING id
                    """,
                    (identity_id,),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE app_identity SET failed_attempts = 0, locked_until = NULL
                    WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                    RETURNING id
                    """,
                    (identity_id, expired_before),
                ).fetchone()
        return row is not None

    def record_login(self, identity_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_identity SET last_login_at = %s WHERE id = %s",
                (at, identity_id),
            )

    # single-use tokens
    def set_reset_token(self, identity_id: str, token: str, expiry: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_identity
                SET password_reset_token = %s, password_reset_expiry = %s
                WHERE id = %s
                """,
                (token, expiry, identity_id),
            )

    def consume_reset_token(self, token: str, now: datetime) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_identity
                SET password_reset_token = NULL, password_reset_expiry = NULL
                WHERE password_reset_token = %s AND password_reset_expiry > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return _identity_from_row(row) if row else None

    def reset_password_with_token(
        self,
        token: str,
        now: datetime,
        password_hash: str,
        password_algo: str,
    ) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_identity
                SET password_hash = %s,
                    password_algo = %s,
                    last_password_change_at = %s,
                    password_reset_token = NULL,
                    password_reset_expiry = NULL
                WHERE password_reset_token = %s AND password_reset_expiry > %s
                RETURNING *
                """,
                (password_hash, password_algo, now, token, now),
            ).fetchone()
        return _identity_from_row(row) if row else None

    def set_verification_token(self, identity_id: str, token: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_identity SET email_verification_token = %s WHERE id = %s",
                (token, identity_id),
            )

    def consume_verification_token(self, token: str) -> Optional[Identity]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_identity
                SET email_verification_token = NULL,
                    email_verified = TRUE,
                    status = CASE WHEN status = 'PENDING' THEN 'ACTIVE' ELSE status END
                WHERE email_verification_token = %s
                RETURNING *
                """,
                (token,),
            ).fetchone()
        return _identity_from_row(row) if row else None

    def update_password(
        self,
        identity_id: str,
        password_hash: str,
        password_algo: str,
        changed_at: datetime,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_identity
                SET password_hash = %s,
                    password_algo = %s,
                    last_password_change_at = %s,
                    password_reset_token = NULL,
                    password_reset_expiry = NULL
                WHERE id = %s
                """,
                (password_hash, password_algo, changed_at, identity_id),
            )
