"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from api.routes import health, sync, maintenance
from api.middleware import RequestContextMiddleware
from catalog_sync.scheduler import SyncScheduler
from core.config import settings
from core.logging import setup_logging
import logging

setup_logging()

logger = logging.getLogger(__name__)

scheduler = SyncScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown"""
    logger.info("Starting Catalog Sync API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Database: {settings.DATABASE_URL.split('@')[1] if '@' in settings.DATABASE_URL else 'configured'}")

    if settings.SCHEDULER_ENABLED:
        scheduler.start()

    yield

    logger.info("Shutting down Catalog Sync API")
    if settings.SCHEDULER_ENABLED:
        scheduler.stop()


app = FastAPI(
    title="Catalog Sync API",
    description="Operational surface of the queue-driven catalog sync engine",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)

app.include_router(health.router)
app.include_router(sync.router)
app.include_router(maintenance.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Catalog Sync API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "dashboard": "/sync/dashboard",
            "errors": "/sync/errors",
            "deferred_report": "/sync/deferred/report",
            "maintenance": "/maintenance",
        }
    }
