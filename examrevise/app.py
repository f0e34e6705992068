from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from examrevise.api.error_handling import register_exception_handlers
from examrevise.api.routes import AuthRoute, router
from examrevise.api.schemas import Envelope, HealthData
from examrevise.config import get_settings
from examrevise.logging import get_logger, set_correlation_id
from examrevise.service.sessions import SessionStore

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

MIN_SWEEP_INTERVAL_SECONDS = 60
HEALTH_CHECK_TIMEOUT_SECONDS = 3

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(
    sessions: SessionStore, interval_seconds: int, grace_hours: int
) -> None:
    """Background loop that deletes sessions long past their expiry."""

    interval = max(interval_seconds, MIN_SWEEP_INTERVAL_SECONDS)
    grace = timedelta(hours=grace_hours)
    try:
        while True:
            try:
                removed = await asyncio.to_thread(sessions.purge_expired, grace)
                if removed:
                    logger.info("session_sweep_completed", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("session_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("session_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    from examrevise.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if runtime.settings.session_sweep_interval_seconds > 0:
            _sweep_task = asyncio.create_task(
                _run_session_sweep(
                    runtime.sessions,
                    runtime.settings.session_sweep_interval_seconds,
                    runtime.settings.session_sweep_grace_hours,
                )
            )
            logger.info(
                "session_sweep_scheduled",
                interval_seconds=runtime.settings.session_sweep_interval_seconds,
            )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="ExamRevise Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    return list(_settings.cors_allow_origins)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with one correlation id.

    Taken from ``X-Request-ID`` when the client sends one, otherwise a new
    UUID. The id is echoed back in the ``X-Request-ID`` response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get(AuthRoute.HEALTH.value, tags=["health"])
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded store probe."""
    from examrevise.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    runtime = get_runtime()
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        checks["database"] = {"status": "healthy"}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database")
        checks["database"] = {"status": "unhealthy", "error": "timeout"}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        checks["database"] = {"status": "unhealthy"}

    healthy = checks["database"]["status"] == "healthy"
    data = HealthData(
        status="healthy" if healthy else "unhealthy",
        checks=checks,
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return Envelope.ok(data=data.model_dump(mode="json")).to_body()


def create_app() -> FastAPI:
    return app
