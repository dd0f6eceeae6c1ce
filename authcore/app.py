from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from authcore.api.error_handling import register_exception_handlers
from authcore.api.routes import router
from authcore.config import Settings, get_settings
from authcore.logging import get_logger, sanitize_error_message, set_correlation_id
from authcore.metrics import metrics_endpoint, observe_http_request
from authcore.service.runtime import get_runtime
from authcore.storage.redis_cache import MemoryStateCache

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Build services at startup so bad configuration stops the process here.
    runtime = get_runtime()
    logger.info("authcore_started", version=__version__)
    yield
    await runtime.aclose()
    logger.info("runtime_cleanup_complete")


async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def record_request_metrics(request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    # route template, not the raw path, keeps label cardinality bounded
    route = request.scope.get("route")
    observe_http_request(
        method=request.method,
        path=getattr(route, "path", None) or "unmatched",
        status_code=response.status_code,
        duration_ms=int((time.perf_counter() - started) * 1000),
    )
    return response


async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # tokens travel in these bodies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


async def health() -> JSONResponse:
    """Report store and OAuth-state cache reachability."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error(
                "health_check_failed", component=label, error=sanitize_error_message(str(exc))
            )
        return False

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is None:
        checks["store"] = {"status": "healthy", "type": "memory"}
        store_ok = True
    else:
        store_ok = await _run_bounded("store", verify_store)
        checks["store"] = {"status": "healthy" if store_ok else "unhealthy", "type": "postgres"}

    if isinstance(runtime.cache, MemoryStateCache):
        checks["cache"] = {"status": "healthy", "type": "memory"}
        cache_ok = True
    else:
        cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
        checks["cache"] = {"status": "healthy" if cache_ok else "unhealthy", "type": "redis"}

    healthy = store_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    # Fail at import time, before serving, if required secrets are missing.
    Settings.from_env()

    app = FastAPI(title="AuthCore", version=__version__, lifespan=lifespan)
    app.middleware("http")(add_security_headers)
    app.middleware("http")(record_request_metrics)
    app.middleware("http")(add_correlation_id)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/healthz", health, methods=["GET"], tags=["health"])
    app.add_api_route(
        "/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False
    )
    return app


app = create_app()


def main() -> None:
    """Serve the app with uvicorn on ``HOST``:``PORT``."""
    settings = get_settings()
    logger.info("authcore_serving", host=settings.host, port=settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, proxy_headers=True)
