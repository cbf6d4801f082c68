"""
Playlist Bulk Ops - bulk add/remove/move for YouTube playlists

FastAPI application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.api import actions, bulk, health, quota
from backend.app.core.config import get_settings
from backend.app.core.database import async_session_maker
from backend.app.core.logging import get_logger, setup_logging
from backend.app.core.security import oauth2_scheme
from backend.app.middleware.trace import TracingMiddleware

settings = get_settings()

# Initialize logging
setup_logging(level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    from backend.app.services.data_retention import DataRetentionService
    from backend.app.services.stale_actions import StaleActionSupervisor
    from backend.app.workers.scheduled import start_scheduler, stop_scheduler

    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    tasks = []
    retention = DataRetentionService(async_session_maker)
    tasks.append(start_scheduler(settings.retention_interval_seconds, retention.run_retention_cleanup))
    logger.info(f"Retention scheduler started (interval={settings.retention_interval_seconds}s)")

    if settings.stale_action_sweep_enabled:
        supervisor = StaleActionSupervisor(async_session_maker)
        tasks.append(start_scheduler(settings.stale_action_sweep_interval_seconds, supervisor.sweep))
        logger.info(
            f"Stuck-action sweep started "
            f"(interval={settings.stale_action_sweep_interval_seconds}s, "
            f"timeout={settings.stale_action_timeout_minutes}m)"
        )

    yield
    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")
    for task in tasks:
        await stop_scheduler(task)


app = FastAPI(
    title=settings.app_name,
    description="Bulk add, remove and move for YouTube playlists with undo and retry",
    version=settings.app_version,
    lifespan=lifespan,
)

# Add Middleware
app.add_middleware(TracingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID", "Idempotency-Key"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(
    bulk.router,
    prefix=f"{settings.api_prefix}/bulk",
    tags=["Bulk Mutations"],
    dependencies=[Depends(oauth2_scheme)]
)
app.include_router(
    actions.router,
    prefix=f"{settings.api_prefix}/actions",
    tags=["Action History"],
    dependencies=[Depends(oauth2_scheme)]
)
app.include_router(
    quota.router,
    prefix=settings.api_prefix,
    tags=["Quota"],
    dependencies=[Depends(oauth2_scheme)]
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
    }
