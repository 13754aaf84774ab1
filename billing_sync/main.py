from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import text
from starlette.responses import JSONResponse, Response

from billing_sync.api.billing import router as billing_router
from billing_sync.api.webhooks import router as webhook_router
from billing_sync.config import settings, validate_settings
from billing_sync.db import session_scope
from billing_sync.errors import register_error_handlers
from billing_sync.logging import configure_logging
from billing_sync.observability import ObservabilityMiddleware
from billing_sync.telemetry import setup_otel

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore[arg-type]
    # ── Startup ──────────────────────────────────────────
    warnings = validate_settings(settings)
    for w in warnings:
        logger.warning("Config warning: %s", w)

    logger.info("Application started (pid=%s)", os.getpid())
    yield

    # ── Shutdown ─────────────────────────────────────────
    logger.info("Application shutting down")


app = FastAPI(title="Billing Sync API", lifespan=lifespan)

configure_logging()
setup_otel(app)

# ── Middleware (order matters: last added = first executed) ──
register_error_handlers(app)

cors_origins = [
    o.strip()
    for o in settings.cors_origins.split(",")
    if o.strip()
]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id"],
    )

app.add_middleware(ObservabilityMiddleware)


def _include_api_router(router: object, dependencies: list[Any] | None = None) -> None:
    app.include_router(router, dependencies=dependencies)  # type: ignore[arg-type]
    app.include_router(router, prefix="/api/v1", dependencies=dependencies)  # type: ignore[arg-type]


_include_api_router(billing_router)
_include_api_router(webhook_router)


# ── Health Checks ────────────────────────────────────────


@app.get("/health")
def health_check() -> dict[str, str]:
    """Liveness probe: ok while the process is running."""
    return {"status": "ok"}


@app.get("/health/ready")
def readiness_check() -> JSONResponse:
    """Readiness probe: verifies database connectivity."""
    checks: dict[str, str] = {}

    try:
        with session_scope() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {e}"

    checks["stripe"] = "ok" if settings.stripe_secret_key else "not configured"

    all_ok = checks["database"] == "ok"
    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={"status": "ok" if all_ok else "degraded", "checks": checks},
    )


@app.get("/metrics")
def metrics() -> Response:
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
