from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from projectflow.api.error_handling import register_exception_handlers
from projectflow.api.routes import router as oauth_router
from projectflow.api.rpc import router as rpc_router
from projectflow.config import Settings
from projectflow.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3
MIN_SWEEP_INTERVAL_SECONDS = 10

# Paths whose responses carry credentials or live state
_NO_STORE_PATHS = ("/rpc", "/healthz")

_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}


class ExpirySweeper:
    """Background task that periodically runs ``Runtime.sweep_expired``."""

    def __init__(self, runtime, interval_seconds: int) -> None:
        self.runtime = runtime
        self.interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                removed = await asyncio.to_thread(self.runtime.sweep_expired)
                logger.debug("expiry_sweep_complete", **removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expiry_sweep_failed", error=str(exc))
            await asyncio.sleep(self.interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from projectflow.service.runtime import get_runtime

    sweeper: Optional[ExpirySweeper] = None
    try:
        runtime = get_runtime()
        sweeper = ExpirySweeper(runtime, runtime.settings.sweep_interval_seconds)
        sweeper.start()
    except Exception as exc:
        logger.error("expiry_sweep_start_failed", error=str(exc))

    yield

    try:
        if sweeper is not None:
            await sweeper.stop()
        await get_runtime().close()
        logger.info("runtime_closed")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


async def _probe(label: str, check: Callable[[], Any]) -> bool:
    """Run a blocking connectivity check off the loop, bounded by a timeout."""
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=label, timeout=PROBE_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_probe_failed", component=label, error=str(exc))
    return False


async def healthz() -> Dict[str, Any]:
    """Store and cache reachability plus build info."""
    from projectflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        store_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}
    else:
        store_ok = await _probe("database", verify_store)
        checks["database"] = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}

    cache_ok = True
    if runtime.cache is None:
        checks["redis"] = {"status": "not_configured"}
    else:
        cache_ok = await _probe("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if cache_ok else "unhealthy"}

    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": runtime.settings.build_sha,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the gateway: OAuth endpoints, discovery, ``/rpc`` and ``/healthz``."""
    settings = settings or Settings.from_env()
    application = FastAPI(
        title="ProjectFlow Agent Gateway", version=__version__, lifespan=lifespan
    )

    # Agents authenticate with bearer headers; browsers only need CORS when origins are listed
    if settings.cors_allow_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=False,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID", "Mcp-Session-Id"],
            expose_headers=["X-Request-ID", "WWW-Authenticate"],
            max_age=3600,
        )

    @application.middleware("http")
    async def request_context(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.url.path in _NO_STORE_PATHS:
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    register_exception_handlers(application)
    application.include_router(oauth_router)
    application.include_router(rpc_router)
    application.add_api_route("/healthz", healthz, methods=["GET"], tags=["health"])
    return application


app = create_app()
