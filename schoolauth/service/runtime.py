from __future__ import annotations

import asyncio
import re
import threading
from typing import Optional, Union

from schoolauth.config import Settings, get_settings, reset_settings_cache
from schoolauth.logging import get_logger
from schoolauth.service.auth import AuthenticationFlow
from schoolauth.service.email import EmailDispatcher, EmailService
from schoolauth.service.lockout import LockoutPolicy
from schoolauth.service.passwords import PasswordService
from schoolauth.service.revocation import RevocationStore
from schoolauth.service.tokens import TokenService
from schoolauth.storage.memory import MemoryStore
from schoolauth.storage.postgres import PostgresStore
from schoolauth.storage.redis_cache import RedisCache, SyncRedisCache
from schoolauth.tenancy import TenantResolver

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore]
Cache = Union[RedisCache, SyncRedisCache]

_URL_CREDENTIALS = re.compile(r"(?P<prefix>://[^/@:]*:)[^/@]*@")


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """``redis://:pw@host:6379`` -> ``redis://:***@host:6379``."""
    if not url:
        return url
    return _URL_CREDENTIALS.sub(r"\g<prefix>***@", url)


def _open_store(settings: Settings) -> Store:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store = MemoryStore() if settings.use_memory_store else PostgresStore(settings.database_url)
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


def _open_cache(settings: Settings) -> Optional[Cache]:
    """Connect to Redis, or return None where running without it is allowed.

    TEST_MODE uses the synchronous client so the cache is not bound to one
    event loop. Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing or
    unreachable Redis is fatal: revocations would not be shared between
    workers.
    """
    failure: Optional[Exception] = None
    if settings.redis_url:
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis backs the token revocation list and could not be reached; set "
            "TEST_MODE or ALLOW_REDIS_FALLBACK_DEV to run with a process-local list"
        ) from failure
    logger.warning(
        "redis_disabled_fallback",
        redis_url=_mask_url_password(settings.redis_url),
        error=str(failure) if failure else "redis_url_missing",
        mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


def _build_email_service(settings: Settings) -> EmailService:
    return EmailService(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
        base_url=settings.app_base_url,
    )


class Runtime:
    """Process-wide wiring of stores, caches and services behind the API."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Store = _open_store(self.settings)
        self.cache: Optional[Cache] = _open_cache(self.settings)

        self.passwords = PasswordService()
        self.tokens = TokenService.from_settings(self.settings)
        self.revocations = RevocationStore(self.cache)
        self.lockout = LockoutPolicy.from_settings(self.store, self.settings)
        self.email_service = _build_email_service(self.settings)
        self.email = EmailDispatcher(self.email_service, max_workers=self.settings.email_workers)
        self.tenant_resolver = TenantResolver(
            self.store,
            strategy=self.settings.tenant_strategy,
            require_registered=self.settings.require_registered_tenant,
        )
        self.auth = AuthenticationFlow(
            self.store,
            self.tokens,
            self.revocations,
            self.lockout,
            self.passwords,
            self.email,
            self.settings,
            tenant_resolver=self.tenant_resolver,
        )

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "postgres",
            redis_enabled=self.cache is not None,
            email_configured=self.email_service.is_configured,
            tenant_strategy=self.settings.tenant_strategy.value,
        )

    async def aclose(self) -> None:
        self.email.shutdown(wait_for_pending=True)
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")

    def _discard(self) -> None:
        # Synchronous teardown for test resets; queued emails are dropped
        self.email.shutdown(wait_for_pending=False)
        if isinstance(self.cache, SyncRedisCache):
            self.cache.client.close()
        elif self.cache is not None:
            try:
                asyncio.get_running_loop().create_task(self.cache.close())
            except RuntimeError:
                asyncio.run(self.cache.close())


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process-wide Runtime, building it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Tear down the current Runtime and build a fresh one from the environment.

    Only permitted under TEST_MODE.
    """
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime._discard()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
