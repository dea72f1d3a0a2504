from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request

from schoolauth.api.error_handling import register_exception_handlers, service_error_response
from schoolauth.api.routes import router
from schoolauth.logging import get_logger, sanitize_error_message, set_correlation_id
from schoolauth.service.errors import TenantNotFound
from schoolauth.tenancy import TENANT_HEADER, tenant_scope

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
CURRENT_TENANT_HEADER = "X-Current-Tenant"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from schoolauth.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="School Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def bind_tenant(request: Request, call_next):
    """Run the request inside the tenant it names, if any.

    The tenant comes from the X-Tenant-ID header or the host's subdomain,
    depending on the configured strategy. Unknown or inactive tenants are
    rejected before the route runs.
    """
    from schoolauth.service.runtime import get_runtime

    resolver = get_runtime().tenant_resolver
    tenant_id = resolver.resolve(
        request.headers.get(TENANT_HEADER), request.headers.get("host")
    )
    if tenant_id is None:
        return await call_next(request)
    try:
        tenant_id = resolver.validate(tenant_id)
    except TenantNotFound as exc:
        return service_error_response(exc)
    with tenant_scope(tenant_id):
        response = await call_next(request)
    response.headers[CURRENT_TENANT_HEADER] = tenant_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id for log tracing.

    The id is taken from X-Request-ID when the client sends one, otherwise
    generated, and is echoed back in the X-Request-ID response header.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report credential store and revocation cache reachability."""
    from schoolauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        db_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        db_ok = False
    except Exception as exc:
        logger.error("health_check_database_failed", error=sanitize_error_message(str(exc)))
        db_ok = False
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        try:
            redis_ok = await asyncio.wait_for(
                runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="redis")
            redis_ok = False
        except Exception as exc:
            logger.error("health_check_redis_failed", error=sanitize_error_message(str(exc)))
            redis_ok = False
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
