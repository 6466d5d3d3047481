from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI

from staffauth.api.error_handling import register_exception_handlers
from staffauth.api.routes import router
from staffauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the token sweeper on startup; stop it and release clients on shutdown."""
    from staffauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.token_sweep_enabled:
            await runtime.sweeper.start()
    except Exception as exc:
        logger.error("startup_token_sweeper_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        await runtime.sweeper.stop()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="staffauth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id for structured logs.

    The id comes from the client's X-Request-ID header when present and is
    echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token-bearing responses must never be cached by proxies
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("API-Version", __version__)
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability plus the running version."""
    from staffauth.service.runtime import get_runtime

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
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    verify_store = getattr(runtime.store, "verify_connection", None)
    if verify_store is not None:
        db_ok = await _run_bounded("database", verify_store)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    checks["token_sweeper"] = {"status": "running" if runtime.sweeper.running else "stopped"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
