from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from credkeep.api.error_handling import register_exception_handlers
from credkeep.api.routes import router
from credkeep.config import get_settings
from credkeep.logging import get_logger, set_correlation_id
from credkeep.service.runtime import get_runtime
from credkeep.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

DEPENDENCY_CHECK_TIMEOUT_SECONDS = 3

_BASE_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}
# token-bearing responses must never be cached
_NO_STORE = "no-store, no-cache, must-revalidate, private"
_HSTS = "max-age=63072000; includeSubDomains"


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_runtime()
    logger.info("app_started", version=__version__, store_type=runtime.store_type)
    try:
        yield
    finally:
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))
        else:
            logger.info("runtime_closed")


app = FastAPI(title="credkeep", version=__version__, lifespan=lifespan)

# cookies cross origins, so the frontend origin is named explicitly
app.add_middleware(
    CORSMiddleware,
    allow_origins=[get_settings().frontend_url],
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def correlate_and_harden(request: Request, call_next):
    """Bind a correlation id for the request's logs and add security headers.

    A well-formed ``X-Request-ID`` from the client is reused, anything else is
    replaced by a fresh UUID. Either way it is echoed on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    headers = response.headers
    headers["X-Request-ID"] = correlation_id
    for name, value in _BASE_SECURITY_HEADERS.items():
        headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/api/") or path == "/healthz":
        headers.setdefault("Cache-Control", _NO_STORE)
    if get_settings().cookie_secure and request.url.scheme == "https":
        headers.setdefault("Strict-Transport-Security", _HSTS)
    return response


register_exception_handlers(app)
app.include_router(router)


async def _check_dependency(name: str, check: Awaitable[Any]) -> Dict[str, Any]:
    try:
        await asyncio.wait_for(check, DEPENDENCY_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", dependency=name, error_type=type(exc).__name__)
        return {"status": "unhealthy"}
    return {"status": "healthy"}


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()

    if isinstance(runtime.store, PostgresStore):
        database = await _check_dependency(
            "database", asyncio.to_thread(runtime.store.verify_connection)
        )
    else:
        database = {"status": "healthy", "type": "memory"}

    if runtime.cache is None:
        redis = {"status": "not_configured"}
    else:
        redis = await _check_dependency("redis", runtime.cache.ping())

    checks = {"database": database, "redis": redis}
    healthy = all(check["status"] != "unhealthy" for check in checks.values())
    return {
        "status": "ok" if healthy else "unhealthy",
        "store": runtime.store_type,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
