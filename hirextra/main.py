"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
builds the ingestion services and registers all API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.dependencies import build_services
from .api.routers import jobs, uploads
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import get_session_factory, init_tables
from .integrations.storage import get_blob_store

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            logger.info("Initializing database tables...")
            init_tables()
            logger.info("Ingestion tables ready")
        except Exception:
            logger.exception("Failed to initialize database tables; the application cannot start")
            raise

    services = build_services(get_session_factory(), get_blob_store())
    app.state.services = services
    services.runner.start()
    if settings.resume_interrupted_jobs_on_startup:
        services.runner.enqueue_interrupted_jobs()

    yield  # Application runs here

    services.runner.stop(timeout=30)


# Initialize FastAPI application
app = FastAPI(
    title="Hirextra Ingestion API",
    version="1.0.0",
    description="Streaming ingestion of large candidate CSV files",
    lifespan=lifespan,
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(uploads.router)
app.include_router(jobs.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Hirextra Ingestion API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint for deployment monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "hirextra-ingest"
    }
