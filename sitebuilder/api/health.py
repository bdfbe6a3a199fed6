"""Health check endpoints.

/health        - Liveness: is the process up?
/health/ready  - Readiness: DB reachable and background workers running?

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from sitebuilder.database import get_engine

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def liveness() -> dict[str, Any]:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(request: Request) -> JSONResponse:
    """Readiness probe - checks DB connectivity and the worker pool."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        db_status = f"error: {exc.__class__.__name__}"

    pool = getattr(request.app.state, "worker_pool", None)
    workers = pool.stats() if pool is not None else {"running": False}

    is_ready = db_status == "ok" and workers["running"]
    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "status": "ready" if is_ready else "not_ready",
            "database": db_status,
            "workers": workers,
            "timestamp": datetime.now(UTC).isoformat(),
        },
    )
