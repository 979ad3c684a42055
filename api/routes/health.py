"""Health check endpoints."""
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from db.connection import get_db
from config.research_sources import validate_research_source_environment
from config.settings import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": settings.environment,
    }


@router.get("/health/db")
async def database_health(db: Session = Depends(get_db)):
    """Database connectivity check."""
    try:
        db.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except SQLAlchemyError as e:
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


@router.get("/health/config")
async def config_check():
    """Check that the model API key and research source keys are present."""
    research = validate_research_source_environment()
    checks = {
        "openrouter_api_key": bool(settings.openrouter_api_key),
        "exa_api_key": bool(settings.exa_api_key),
        "perplexity_api_key": bool(settings.perplexity_api_key),
        "database_url": bool(settings.database_url),
    }

    all_ok = all(checks.values())

    return {
        "status": "healthy" if all_ok else "degraded",
        "checks": checks,
        "research_sources": {
            "available": research["available"],
            "missing": research["missing"],
        },
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
