#!/usr/bin/env python3
"""Create a school tenant and its first administrator.

Usage:
    python scripts/bootstrap_admin.py --tenant-id school-a --tenant-name "School A" \
        --subdomain school-a --username admin --email admin@school-a.edu \
        --password 'Sup3r-Secret-Pass'

    # Every flag can also come from the environment:
    TENANT_ID=school-a ADMIN_EMAIL=admin@school-a.edu ADMIN_PASSWORD='Sup3r-Secret-Pass' \
        python scripts/bootstrap_admin.py

Environment:
    TENANT_ID, TENANT_NAME, TENANT_SUBDOMAIN
    ADMIN_USERNAME (default "admin"), ADMIN_EMAIL, ADMIN_PASSWORD
    DATABASE_URL  Postgres DSN; without it the run uses a throwaway in-memory store
"""
from __future__ import annotations

import argparse
import os
import secrets
import string
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

MIN_ADMIN_PASSWORD_LENGTH = 12
_CHARACTER_CLASSES = (
    string.ascii_uppercase,
    string.ascii_lowercase,
    string.digits,
    string.punctuation,
)


def validate_password(password: str) -> bool:
    """Admin passwords need 12+ characters drawn from at least three classes."""
    if len(password) < MIN_ADMIN_PASSWORD_LENGTH:
        return False
    classes = sum(1 for chars in _CHARACTER_CLASSES if any(c in chars for c in password))
    return classes >= 3


def bootstrap_admin(
    tenant_id: str,
    tenant_name: str,
    username: str,
    email: str,
    password: str,
    *,
    subdomain: Optional[str] = None,
    dry_run: bool = False,
) -> dict:
    """Ensure ``tenant_id`` exists and has an ADMIN identity named ``username``.

    An existing identity with that username or email is promoted rather than
    duplicated. Returns a dict with tenant_id, identity_id and status
    (created, promoted, already_admin or dry_run).
    """
    # Late import so environment defaults set by main() reach the settings
    from schoolauth.service.runtime import get_runtime
    from schoolauth.storage.models import Identity, IdentityStatus, Role

    runtime = get_runtime()
    store = runtime.store

    if store.get_tenant(tenant_id) is None:
        if dry_run:
            print(f"[dry run] tenant {tenant_id} would be created")
        else:
            tenant = store.create_tenant(tenant_id, tenant_name, subdomain=subdomain)
            print(f"tenant {tenant.id} created ({tenant.name})")

    existing = store.find_by_username_or_email(
        tenant_id, username
    ) or store.find_by_username_or_email(tenant_id, email)
    if existing is not None:
        outcome = {"tenant_id": tenant_id, "identity_id": existing.id}
        if existing.role in (Role.ADMIN, Role.SUPER_ADMIN):
            print(f"{existing.username} is already an administrator")
            return {**outcome, "status": "already_admin"}
        if dry_run:
            print(f"[dry run] {existing.username} would be promoted to ADMIN")
            return {**outcome, "status": "dry_run"}
        existing.role = Role.ADMIN
        store.save(existing)
        print(f"{existing.username} promoted to ADMIN")
        return {**outcome, "status": "promoted"}

    if dry_run:
        print(f"[dry run] administrator {username} would be created in {tenant_id}")
        return {"tenant_id": tenant_id, "identity_id": None, "status": "dry_run"}

    password_hash, algo = runtime.passwords.hash(password)
    identity = store.create_identity(
        Identity.new(
            tenant_id=tenant_id,
            username=username,
            email=email.strip().lower(),
            password_hash=password_hash,
            password_algo=algo,
            role=Role.ADMIN,
            status=IdentityStatus.ACTIVE,
            email_verified=True,
        )
    )
    print(f"administrator {username} created")
    return {"tenant_id": tenant_id, "identity_id": identity.id, "status": "created"}


def _build_parser() -> argparse.ArgumentParser:
    env = os.environ.get
    parser = argparse.ArgumentParser(
        description="Create a school tenant and its first administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--tenant-id", default=env("TENANT_ID"))
    parser.add_argument("--tenant-name", default=env("TENANT_NAME"))
    parser.add_argument("--subdomain", default=env("TENANT_SUBDOMAIN"))
    parser.add_argument("--username", default=env("ADMIN_USERNAME", "admin"))
    parser.add_argument("--email", default=env("ADMIN_EMAIL"))
    parser.add_argument("--password", default=env("ADMIN_PASSWORD"))
    parser.add_argument(
        "--dry-run", action="store_true", help="report the changes without applying them"
    )
    return parser


def _prepare_environment() -> None:
    # A one-off JWT secret is enough: the script never issues tokens
    os.environ.setdefault("JWT_SECRET", secrets.token_urlsafe(48))
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("DATABASE_URL not set; changes go to an in-memory store and are discarded")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


def main() -> None:
    args = _build_parser().parse_args()

    missing = [
        flag
        for flag, value in (
            ("--tenant-id", args.tenant_id),
            ("--email", args.email),
            ("--password", args.password),
        )
        if not value
    ]
    if missing:
        sys.exit(f"error: missing {', '.join(missing)} (flag or environment variable)")
    if not validate_password(args.password):
        sys.exit(
            f"error: password needs {MIN_ADMIN_PASSWORD_LENGTH}+ characters from at least "
            "three of: uppercase, lowercase, digits, punctuation"
        )

    _prepare_environment()
    try:
        result = bootstrap_admin(
            args.tenant_id,
            args.tenant_name or args.tenant_id,
            args.username,
            args.email,
            args.password,
            subdomain=args.subdomain,
            dry_run=args.dry_run,
        )
    except Exception as exc:
        sys.exit(f"error: {exc}")

    print(f"{result['status']}: tenant={result['tenant_id']} identity={result['identity_id']}")


if __name__ == "__main__":
    main()
