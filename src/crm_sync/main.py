"""FastAPI application factory.

Creates the app with tenant middleware, logging middleware, metrics middleware,
CORS, lifespan wiring of the sync engine (limiter, adapters, orchestrator,
service, scheduler), and the v1 API router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from src.crm_sync.api.middleware import LoggingMiddleware, TenantHeaderMiddleware
from src.crm_sync.api.v1.router import router as v1_router
from src.crm_sync.config import get_settings
from src.crm_sync.core.database import close_db, get_session, init_db
from src.crm_sync.core.logging import configure_structlog
from src.crm_sync.core.monitoring import MetricsMiddleware, get_metrics_endpoint
from src.crm_sync.core.redis import close_redis, get_redis_pool
from src.crm_sync.orchestrator import SyncOrchestrator
from src.crm_sync.providers import build_adapters
from src.crm_sync.rate_limiter import RateLimiter, RedisDayCounter
from src.crm_sync.repository import SyncRepository
from src.crm_sync.scheduler import SyncScheduler
from src.crm_sync.service import SyncService
from src.crm_sync.state_store import SyncStateStore


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the engine on startup; drain runs and close pools on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    limiter = RateLimiter(RedisDayCounter(get_redis_pool()), max_wait=settings.RATE_LIMIT_MAX_WAIT)
    repository = SyncRepository(session_factory=get_session)
    state_store = SyncStateStore(session_factory=get_session)

    async def save_credentials(connection_id: str, credentials: dict[str, Any]) -> None:
        await repository.update_connection(connection_id, credentials=credentials)

    adapters = build_adapters(limiter, credential_saver=save_credentials, settings=settings)
    orchestrator = SyncOrchestrator(repository, state_store, adapters, settings=settings)
    service = SyncService(repository, orchestrator, adapters, settings=settings)
    scheduler = SyncScheduler(service, repository, adapters, settings=settings)
    scheduler.start()

    app.state.sync_repository = repository
    app.state.sync_service = service
    app.state.sync_scheduler = scheduler
    log.info(
        "crm_sync.started",
        environment=settings.ENVIRONMENT.value,
        providers=[p.value for p in adapters],
        scheduler=scheduler.started,
    )

    yield

    scheduler.stop()
    await service.shutdown()
    for adapter in adapters.values():
        await adapter.close()
    await close_redis()
    await close_db()
    log.info("crm_sync.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="CRM Sync Engine",
        version="0.1.0",
        description="Bidirectional contact sync with HubSpot, Salesforce and Pipedrive",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(TenantHeaderMiddleware)

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

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return await get_metrics_endpoint()

    return app


# Module-level app for uvicorn
app = create_app()
