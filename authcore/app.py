from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime, timezone

from fastapi import FastAPI, Request

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.config import get_settings
from authcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

PROBE_TIMEOUT_SECONDS = 3

_BASE_SECURITY_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "API-Version": __version__,
}


async def _security_scan_loop(monitor, interval_seconds: int) -> None:
    """Run the advisory login-history scan until cancelled."""
    interval = max(interval_seconds, 60)
    while True:
        try:
            alerts = await monitor.scan()
            logger.info("security_scan_completed", alerts=len(alerts))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("security_scan_failed", error_type=type(exc).__name__, error=str(exc))
        await asyncio.sleep(interval)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    scan_task = None
    if runtime.settings.security_scan_enabled:
        scan_task = asyncio.create_task(
            _security_scan_loop(
                runtime.security_monitor, runtime.settings.security_scan_interval_seconds
            )
        )
        logger.info(
            "security_scan_scheduled",
            interval_seconds=runtime.settings.security_scan_interval_seconds,
        )
    try:
        yield
    finally:
        if scan_task is not None:
            scan_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await scan_task
        try:
            await get_runtime().close()
            logger.info("runtime_closed")
        except Exception as exc:
            logger.error("runtime_close_failed", error=str(exc))


app = FastAPI(title="authcore", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def correlation_middleware(request: Request, call_next):
    """Bind X-Request-ID (or a fresh id) to the logging context and echo it back."""
    request_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    for name, value in _BASE_SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    path = request.url.path
    if path.startswith("/v1/") or path == "/healthz":
        # Auth responses carry tokens and must never be cached
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")
    return response


register_exception_handlers(app)
app.include_router(router)


async def _probe(component: str, check) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(check), PROBE_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error("health_probe_timeout", component=component, timeout=PROBE_TIMEOUT_SECONDS)
        return False
    except Exception as exc:
        logger.error("health_probe_failed", component=component, error=str(exc))
        return False
    return True


@app.get("/healthz")
async def health() -> dict:
    """Report identity store and session cache reachability."""
    from authcore.service.runtime import get_runtime
    from authcore.storage.postgres import PostgresStore

    runtime = get_runtime()
    if isinstance(runtime.store, PostgresStore):
        store_ok = await _probe("store", runtime.store.ping)
        store = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}
    else:
        store_ok = True
        store = {"status": "healthy", "type": "memory"}
    cache_ok = await _probe("cache", runtime.cache.verify_connection)
    cache = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }
    return {
        "status": "healthy" if store_ok and cache_ok else "unhealthy",
        "checks": {"database": store, "cache": cache},
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
