"""Request-scoped tenant context and tenant resolution.

The active tenant lives in a ``ContextVar`` so every thread and every asyncio
task observes its own value. Code that needs a tenant for the duration of an
operation enters :func:`tenant_scope`, which restores the previous value on
exit regardless of how the block terminates.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Protocol

from schoolauth.config import TenantStrategy
from schoolauth.logging import get_logger
from schoolauth.service.errors import ConfigurationError, TenantNotFound
from schoolauth.storage.models import Tenant

logger = get_logger(__name__)

TENANT_HEADER = "X-Tenant-ID"

_current_tenant: ContextVar[Optional[str]] = ContextVar("current_tenant", default=None)


def set_current_tenant(tenant_id: Optional[str]) -> None:
    """Set the tenant for the current execution context.

    Prefer :func:`tenant_scope`; a bare set must be paired with :func:`clear`.
    """
    _current_tenant.set(tenant_id or None)


def get_current_tenant() -> Optional[str]:
    return _current_tenant.get()


def has_tenant() -> bool:
    return _current_tenant.get() is not None


def require_current_tenant() -> str:
    """Return the active tenant or fail loudly when none is set."""
    tenant_id = _current_tenant.get()
    if tenant_id is None:
        raise ConfigurationError("tenant context is required but not set")
    return tenant_id


def clear() -> None:
    _current_tenant.set(None)


@contextmanager
def tenant_scope(tenant_id: Optional[str]) -> Iterator[Optional[str]]:
    """Bind ``tenant_id`` for the duration of the block.

    On exit the slot returns to whatever the enclosing scope had, so nested
    scopes compose and a worker thread reused for the next request starts
    from a clean slot.
    """
    token = _current_tenant.set(tenant_id or None)
    try:
        yield tenant_id
    finally:
        _current_tenant.reset(token)


class TenantRegistry(Protocol):
    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_subdomain(self, subdomain: str) -> Optional[Tenant]: ...


class TenantResolver:
    """Derive and validate the tenant of an inbound request."""

    def __init__(
        self,
        registry: TenantRegistry,
        *,
        strategy: TenantStrategy = TenantStrategy.HEADER,
        require_registered: bool = True,
    ) -> None:
        self.registry = registry
        self.strategy = strategy
        self.require_registered = require_registered

    def resolve(
        self, header_value: Optional[str] = None, host: Optional[str] = None
    ) -> Optional[str]:
        if self.strategy == TenantStrategy.HEADER:
            return self._from_header(header_value)
        if self.strategy == TenantStrategy.SUBDOMAIN:
            return self._from_subdomain(host)
        return self._from_header(header_value) or self._from_subdomain(host)

    def validate(self, tenant_id: str) -> str:
        """Return ``tenant_id`` if it may be used, else raise TenantNotFound."""
        tenant = self.registry.get_tenant(tenant_id)
        if tenant is None:
            if self.require_registered:
                logger.warning("tenant_unknown", requested_tenant=tenant_id)
                raise TenantNotFound("invalid or inactive tenant")
            return tenant_id
        if not tenant.is_active:
            logger.warning("tenant_inactive", requested_tenant=tenant_id)
            raise TenantNotFound("invalid or inactive tenant")
        return tenant.id

    def _from_header(self, header_value: Optional[str]) -> Optional[str]:
        if header_value is None:
            return None
        value = header_value.strip()
        return value or None

    def _from_subdomain(self, host: Optional[str]) -> Optional[str]:
        if not host:
            return None
        hostname = host.split(":", 1)[0].lower()
        if hostname.startswith("www."):
            return None
        parts = hostname.split(".")
        if len(parts) <= 2:
            return None
        tenant = self.registry.get_tenant_by_subdomain(parts[0])
        if tenant is None:
            logger.debug("tenant_subdomain_unmatched", subdomain=parts[0])
            return None
        return tenant.id


__all__ = [
    "TENANT_HEADER",
    "TenantResolver",
    "clear",
    "get_current_tenant",
    "has_tenant",
    "require_current_tenant",
    "set_current_tenant",
    "tenant_scope",
]
