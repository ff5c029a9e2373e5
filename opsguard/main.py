"""OpsGuard scheduler FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from opsguard.config import settings, validate_cron_settings
from opsguard.database import close_database
from opsguard.logging_config import get_logger, setup_logging
from opsguard.middleware import CorrelationIdMiddleware
from opsguard.routers import cron, health
from opsguard.services.cron_scheduler import start_cron_scheduler, stop_cron_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations are applied by `opsguard-migrate` before the server starts
    validate_cron_settings()

    started = start_cron_scheduler()
    logger.info(
        "OpsGuard scheduler service started",
        environment=settings.environment,
        internal_cron=started,
    )

    yield

    logger.info("Shutting down OpsGuard scheduler service...")
    await stop_cron_scheduler()
    await close_database()
    logger.info("OpsGuard scheduler service shutdown complete")


app = FastAPI(
    title="OpsGuard Scheduler",
    description="Incident escalation and cron scheduling service",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(cron.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "OpsGuard Scheduler",
        "version": "0.1.0",
        "docs": "/docs",
    }
