"""
FastAPI application for the prediction session worker.

Provides HTTP endpoints for:
- Triggering prediction session runs
- Recovering stuck sessions and cleaning up failed ones
- Polling session status
- System health checks
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config.logging_config import setup_logging
from config.settings import settings
from db.connection import init_db
from api.routes import health, jobs

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    setup_logging()
    logger.info("🚀 Starting Prediction Worker API...")
    init_db()
    logger.info("✅ Database initialized")

    yield

    # Shutdown
    logger.info("👋 Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Prediction Worker API",
    description="Background execution of multi-model prediction sessions",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.environment == "development" else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "Prediction Worker API",
        "version": "1.0.0",
        "environment": settings.environment,
        "docs": "/docs",
        "health": "/health",
    }
