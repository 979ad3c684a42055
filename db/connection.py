"""Database engine and session factory for the worker, API and CLIs."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator

from config.settings import settings
from db.models import Base


def create_db_engine(database_url: str, environment: str = "development") -> Engine:
    """
    Build the engine for a database URL.

    Production uses a pooled PostgreSQL connection; the worker's model pool
    and the API share it. Anything else is SQLite, which needs
    check_same_thread disabled because sessions are used from pool threads.
    """
    if environment == "production":
        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=5,
            max_overflow=10,
        )
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False},
    )


engine = create_db_engine(settings.database_url, settings.environment)

# Session factory shared by SessionStore, ResearchCache, CreditLedger and the model provider
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create tables for sessions, predictions, research cache and credits."""
    if settings.database_url.startswith("sqlite:///./"):
        settings.data_dir.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
