from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from huddle.api.error_handling import register_exception_handlers
from huddle.api.routes import router
from huddle.config import get_settings
from huddle.logging import get_logger, set_correlation_id
from huddle.service.runtime import close_runtime, get_runtime, init_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_settings = get_settings()


async def _run_session_sweep(interval_seconds: int) -> None:
    """Background loop deleting sessions whose expiry has passed."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(get_runtime().sessions.sweep_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = init_runtime()
    sweep_task = asyncio.create_task(
        _run_session_sweep(runtime.settings.session_sweep_interval_seconds)
    )
    try:
        yield
    finally:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task
        await close_runtime()
        logger.info("runtime_cleanup_complete")


app = FastAPI(title="Huddle", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag the request with X-Request-ID (client supplied or generated)."""
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
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/"):
        # Token-bearing responses must not land in shared caches
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> JSONResponse:
    """Liveness plus dependency checks for the store and Redis."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }
    healthy = db_ok

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
        healthy = healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": __version__,
            "checks": checks,
        },
    )