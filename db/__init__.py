"""Database module for the prediction session worker."""
from db.connection import get_db, init_db, SessionLocal, engine
from db.models import (
    Base,
    User,
    CreditTransaction,
    Market,
    PredictionSession,
    PredictionSessionStatus,
    Prediction,
    ResearchCache,
    prediction_session_research,
)

__all__ = [
    "get_db",
    "init_db",
    "SessionLocal",
    "engine",
    "Base",
    "User",
    "CreditTransaction",
    "Market",
    "PredictionSession",
    "PredictionSessionStatus",
    "Prediction",
    "ResearchCache",
    "prediction_session_research",
]
