"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring of the sync engine, and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.bundlesync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.bundlesync.api.v1.router import router as v1_router
from src.bundlesync.commerce.shopify import build_commerce_platform
from src.bundlesync.config import get_settings
from src.bundlesync.core.database import close_db, get_session, init_db
from src.bundlesync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.bundlesync.orders.repository import OrderRepository
from src.bundlesync.sync.orchestrator import SyncOrchestrator
from src.bundlesync.sync.publisher import CompositeOfferingPublisher
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.sync.worker import SyncTaskPool
from src.bundlesync.webhooks.processor import EventProcessor
from src.bundlesync.webhooks.receiver import WebhookReceiver
from src.bundlesync.webhooks.repository import WebhookEventRepository


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, wire the sync engine, drain it on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Sync Engine ─────────────────────────────────────────────────────
    pool = SyncTaskPool(concurrency=settings.SYNC_WORKER_CONCURRENCY)
    sync_repository = SyncRepository(session_factory=get_session)
    order_repository = OrderRepository(session_factory=get_session)
    webhook_repository = WebhookEventRepository(session_factory=get_session)

    platform = build_commerce_platform(settings)
    publisher = None
    if platform is not None:
        publisher = CompositeOfferingPublisher(
            platform,
            sync_repository,
            initial_interval=settings.PUBLISH_POLL_INITIAL_SECONDS,
            max_interval=settings.PUBLISH_POLL_MAX_INTERVAL_SECONDS,
            max_wait=settings.PUBLISH_MAX_WAIT_SECONDS,
            confirm_window=settings.PUBLISH_UNCONFIRMED_CREATE_WINDOW_SECONDS,
        )
    else:
        log.warning("commerce.not_configured")

    orchestrator = SyncOrchestrator(sync_repository, platform, publisher, pool)
    processor = EventProcessor(
        sync_repository,
        order_repository,
        webhook_repository,
        orchestrator,
        echo_window_seconds=settings.ECHO_SUPPRESSION_SECONDS,
    )
    if not settings.COMMERCE_WEBHOOK_SECRET:
        log.warning("webhook.secret_missing")

    app.state.sync_task_pool = pool
    app.state.sync_repository = sync_repository
    app.state.order_repository = order_repository
    app.state.sync_orchestrator = orchestrator
    app.state.webhook_receiver = WebhookReceiver(
        settings.COMMERCE_WEBHOOK_SECRET,
        webhook_repository,
        processor,
        pool,
    )

    resumed = await orchestrator.resume_interrupted()
    log.info("sync_engine.started", resumed_pushes=resumed, platform=platform is not None)

    yield

    # Shutdown
    await pool.shutdown()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Bundle Sync API",
        version="0.1.0",
        description="Keeps trainer bundles consistent with their commerce-platform listings",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
