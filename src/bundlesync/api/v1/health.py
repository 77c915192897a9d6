"""Health check endpoints.

/health is liveness only. /health/ready answers 503 unless the database
responds; it also reports commerce configuration and background sync load,
which do not affect readiness.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.bundlesync.config import get_settings
from src.bundlesync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    return {"status": "ok", "environment": get_settings().ENVIRONMENT.value}


async def _database_check() -> dict[str, str]:
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return {"database": "error", "database_error": str(exc)}
    return {"database": "ok"}


def _sync_engine_check(request: Request) -> dict:
    settings = get_settings()
    pool = getattr(request.app.state, "sync_task_pool", None)
    return {
        "commerce": "configured" if settings.commerce_configured else "not_configured",
        "webhook_secret": "configured" if settings.COMMERCE_WEBHOOK_SECRET else "missing",
        "sync_engine": "running" if pool is not None else "not_started",
        "sync_tasks_in_flight": pool.in_flight if pool is not None else 0,
    }


@router.get("/health/ready")
async def readiness_check(request: Request):
    checks = {**await _database_check(), **_sync_engine_check(request)}
    ready = checks["database"] == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "ready" if ready else "degraded", "checks": checks},
    )
