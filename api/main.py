"""
FastAPI Application — trigger endpoint for the Discord async worker.

Provides:
- Trigger endpoint that starts the supervisor loop (once per process)
- Health check with supervisor state
- Dead-letter listing for operator triage
"""
from __future__ import annotations

import hmac
import structlog
from datetime import datetime, timezone
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config.settings import Settings, get_settings
from core.worker import Worker, build_worker
from database.session import init_db
from observability.logging import configure_logging
from observability.reporting import init_sentry

logger = structlog.get_logger()

SECRET_HEADER = "x-edge-function-secret"
_NO_STORE = {"Cache-Control": "no-store"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_secret(request: Request, settings: Settings) -> Optional[JSONResponse]:
    """Return an error response when the shared secret is missing or wrong."""
    expected = settings.worker.edge_function_secret
    if not expected:
        logger.error("edge_function_secret_not_configured")
        return JSONResponse(
            {"error": "EDGE_FUNCTION_SECRET is not configured"},
            status_code=500,
            headers=_NO_STORE,
        )
    provided = request.headers.get(SECRET_HEADER, "")
    if not provided or not hmac.compare_digest(provided, expected):
        logger.warning("trigger_unauthorized", has_secret=bool(provided))
        return JSONResponse(
            {"error": "Invalid or missing secret"},
            status_code=401,
            headers={
                **_NO_STORE,
                "WWW-Authenticate": 'Bearer realm="discord_async_worker", error="invalid_token"',
            },
        )
    return None


def create_app(worker: Worker = None, settings: Settings = None) -> FastAPI:
    """Build the app. Tests pass a prepared worker; production builds one from settings."""
    settings = settings or (worker.settings if worker else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.worker is None:
            configure_logging(settings.observability.log_level, settings.observability.log_format)
            init_sentry(settings.observability)
            app.state.worker = build_worker(settings)
            if settings.database.store_backend == "sql":
                await init_db()
        logger.info("discord_async_worker_ready", app=settings.app_name)
        yield
        await app.state.worker.close()
        logger.info("discord_async_worker_stopped")

    app = FastAPI(
        title="Discord Async Worker",
        description="Rate-limited, retrying executor for queued Discord API calls",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.worker = worker
    app.state.settings = settings

    # ══════════════════════════════════════════════════════════════
    #  TRIGGER
    # ══════════════════════════════════════════════════════════════

    @app.api_route("/api/v1/discord-async-worker", methods=["GET", "POST"])
    async def trigger(request: Request):
        denied = _check_secret(request, settings)
        if denied is not None:
            return denied

        already_running = request.app.state.worker.supervisor.start()
        return JSONResponse(
            {
                "message": "Discord async worker started",
                "already_running": already_running,
                "timestamp": _now(),
            },
            headers=_NO_STORE,
        )

    # ══════════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        supervisor = request.app.state.worker.supervisor
        return {
            "status": "healthy",
            "timestamp": _now(),
            "supervisor_running": supervisor.is_running,
            "batches_processed": supervisor.batches_processed,
            "last_batch_at": supervisor.last_batch_at.isoformat() if supervisor.last_batch_at else None,
            "rate_limiter": request.app.state.worker.limiter.backend,
        }

    @app.get("/api/v1/dead-letters")
    async def list_dead_letters(request: Request, limit: int = Query(50, ge=1, le=500)):
        denied = _check_secret(request, settings)
        if denied is not None:
            return denied
        records = await request.app.state.worker.store.list_dead_letters(limit)
        return JSONResponse({"dead_letters": records, "count": len(records)}, headers=_NO_STORE)

    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
