"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure logging
3. Initialize database engine and session factory
4. Create the shared webhook HTTP client
5. Start the background worker pool with its handlers
   (webhook dispatch/delivery/retry, API key usage and last-used updates)
6. Register middleware and routers

Shutdown order:
1. Stop the retry sweep
2. Drain and stop the worker pool
3. Close the HTTP client
4. Close DB connection pool
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sitebuilder.api.router import api_router
from sitebuilder.config import get_settings
from sitebuilder.database import close_db, init_db
from sitebuilder.infra.background_worker import BackgroundWorkerPool
from sitebuilder.services.dispatcher import EventDispatcher
from sitebuilder.services.usage import UsageRecorder
from sitebuilder.telemetry.logging import RequestIdMiddleware, configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings = get_settings()

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.is_prod,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        db_url=settings.database_url.split("@")[-1],
    )

    init_db(settings)

    http_client = httpx.AsyncClient(
        timeout=settings.webhook_timeout_seconds,
        headers={"User-Agent": settings.webhook_user_agent},
    )

    worker_pool = BackgroundWorkerPool(
        max_workers=settings.background_worker_concurrency,
        queue_size=settings.background_queue_size,
    )
    dispatcher = EventDispatcher(worker_pool, settings=settings, http_client=http_client)
    usage_recorder = UsageRecorder(worker_pool)
    await worker_pool.start()

    if settings.webhook_retry_sweep_interval_seconds:
        dispatcher.start_retry_sweep(settings.webhook_retry_sweep_interval_seconds)

    app.state.http_client = http_client
    app.state.worker_pool = worker_pool
    app.state.dispatcher = dispatcher
    app.state.usage_recorder = usage_recorder

    log.info("app.ready")
    yield

    await dispatcher.stop_retry_sweep()
    await worker_pool.shutdown(drain=True)
    await http_client.aclose()
    await close_db()
    log.info("app.shutdown")


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="SiteBuilder Integrations API",
        description=(
            "Tenant webhooks with signed delivery and retries, and scoped API keys "
            "with usage metering."
        ),
        version="0.1.0",
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )

    # ------------------------------------------------------------------ #
    # Middleware (added in reverse order - last added = first executed)
    # ------------------------------------------------------------------ #

    cors_origins = ["*"] if settings.is_dev else settings.cors_allowed_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.is_prod,
        allow_methods=["*"],
        allow_headers=["Authorization", "Content-Type", "X-API-Key"],
    )

    # Unique request ID for log correlation
    app.add_middleware(RequestIdMiddleware)

    # ------------------------------------------------------------------ #
    # Routers
    # ------------------------------------------------------------------ #
    app.include_router(api_router)

    # ------------------------------------------------------------------ #
    # Global exception handlers
    # ------------------------------------------------------------------ #

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app


# Module-level app instance for uvicorn
app = create_app()
