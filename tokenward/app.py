from __future__ import annotations

import asyncio
import contextlib
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tokenward.api.error_handling import register_exception_handlers
from tokenward.api.routes import router
from tokenward.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

# Seconds between expired-session sweeps; 0 disables the background task
_PURGE_INTERVAL_SECONDS = int(os.getenv("SESSION_PURGE_INTERVAL", "3600"))

_purge_task: asyncio.Task | None = None


async def _run_session_purge(interval_seconds: int) -> None:
    """Periodically delete sessions that are terminal or past their ceiling."""
    from tokenward.service.runtime import get_runtime

    interval = max(interval_seconds, 60)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                purged = await get_runtime().sessions.purge_expired()
                logger.info("session_purge_completed", purged=purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort maintenance
                logger.warning("session_purge_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("session_purge_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly and run maintenance for the app's lifetime."""
    global _purge_task
    from tokenward.service.runtime import get_runtime

    runtime = get_runtime()
    if _PURGE_INTERVAL_SECONDS > 0:
        _purge_task = asyncio.create_task(_run_session_purge(_PURGE_INTERVAL_SECONDS))

    yield

    if _purge_task:
        _purge_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _purge_task
        _purge_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


def create_app() -> FastAPI:
    application = FastAPI(title="tokenward", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=[
            origin.strip()
            for origin in os.getenv("CORS_ALLOW_ORIGINS", "http://localhost:3000").split(",")
            if origin.strip()
        ],
        allow_credentials=False,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request, call_next):
        """Adopt the caller's X-Request-ID (or mint one) for log correlation."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.get("/healthz", tags=["meta"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    register_exception_handlers(application)
    application.include_router(router)
    return application


app = create_app()
