from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from psycopg import Error as DatabaseError

from authera.api.error_handling import register_exception_handlers
from authera.api.routes import router
from authera.config import get_settings
from authera.logging import get_logger, set_correlation_id
from authera.storage.errors import CacheUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release its connections on shutdown."""
    from authera.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except (CacheUnavailable, OSError) as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Authera", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-Setup-Token", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id (client X-Request-ID or a new UUID)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/", response_class=PlainTextResponse, include_in_schema=False)
async def root() -> str:
    return "Authera backend is running"


@app.get("/healthz")
async def health():
    """Report store and cache reachability."""
    from authera.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        await asyncio.wait_for(runtime.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["cache"] = {"status": "ok", "type": type(runtime.cache).__name__}
    except (asyncio.TimeoutError, CacheUnavailable) as exc:
        logger.error("health_check_failed", check="cache", error=str(exc))
        checks["cache"] = {"status": "error", "error": type(exc).__name__}

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.user_exists, "healthcheck@invalid.invalid"),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        checks["store"] = {"status": "ok", "type": type(runtime.store).__name__}
    except (asyncio.TimeoutError, DatabaseError, OSError, RuntimeError) as exc:
        logger.error("health_check_failed", check="store", error=str(exc))
        checks["store"] = {"status": "error", "error": type(exc).__name__}

    healthy = all(check["status"] == "ok" for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks},
    )
