"""SQLAlchemy ORM models for the prediction session worker."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, Text,
    ForeignKey, Enum, Index, JSON, Table, CheckConstraint
)
from sqlalchemy.orm import DeclarativeBase, relationship

from models.session import SessionStatus as PredictionSessionStatus


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the convention for stored timestamps)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


# =============================================================================
# ASSOCIATIONS
# =============================================================================

# Many sessions may reuse one cached research entry
prediction_session_research = Table(
    "prediction_session_research",
    Base.metadata,
    Column("session_id", String(36), ForeignKey("prediction_sessions.id", ondelete="CASCADE"), primary_key=True),
    Column("research_cache_id", Integer, ForeignKey("research_cache.id", ondelete="CASCADE"), primary_key=True),
)


# =============================================================================
# MODELS
# =============================================================================

class User(Base):
    """Platform user with a spendable credit balance."""
    __tablename__ = "users"

    id = Column(String(255), primary_key=True, default=new_id)
    email = Column(String(255), unique=True)

    # Credits
    credits = Column(Integer, nullable=False, default=0)
    total_credits_earned = Column(Integer, nullable=False, default=0)
    total_credits_spent = Column(Integer, nullable=False, default=0)
    credits_last_reset = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    sessions = relationship("PredictionSession", back_populates="user")
    credit_transactions = relationship("CreditTransaction", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )


class CreditTransaction(Base):
    """Ledger row for every credit movement (positive = earned/refunded, negative = spent)."""
    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)  # "prediction_session", "refund", "daily_reset", "signup_bonus"
    market_id = Column(String(255))
    session_id = Column(String(36))
    prediction_id = Column(Integer)
    balance_after = Column(Integer)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="credit_transactions")

    __table_args__ = (
        Index("idx_credit_transactions_user", "user_id", "created_at"),
    )


class Market(Base):
    """Prediction market question (read-only for the worker)."""
    __tablename__ = "markets"

    id = Column(String(255), primary_key=True)
    question = Column(Text, nullable=False)
    description = Column(Text)
    outcomes = Column(JSON)  # ["Yes", "No"]
    end_date = Column(DateTime)
    resolution_source = Column(Text)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    predictions = relationship("Prediction", back_populates="market")


class PredictionSession(Base):
    """One user request for predictions from 1..K models and 0..S research sources."""
    __tablename__ = "prediction_sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False)
    market_id = Column(String(255), ForeignKey("markets.id"), nullable=False)

    selected_models = Column(JSON, nullable=False)  # ["openai/gpt-4o", ...]
    selected_research_sources = Column(JSON, nullable=False, default=list)  # ["exa", "grok"]

    # State
    status = Column(Enum(PredictionSessionStatus), nullable=False, default=PredictionSessionStatus.INITIALIZING)
    step = Column(Text)
    error = Column(Text)

    # Compensation
    credits_debited = Column(Integer)  # Charged by the request layer before the worker runs
    compensated_at = Column(DateTime)  # Set together with the refund; never refund twice

    created_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime)

    # Relationships
    user = relationship("User", back_populates="sessions")
    market = relationship("Market")
    predictions = relationship("Prediction", back_populates="session", order_by="Prediction.created_at")
    research = relationship("ResearchCache", secondary=prediction_session_research, back_populates="sessions")

    __table_args__ = (
        Index("idx_prediction_sessions_status_created", "status", "created_at"),
        Index("idx_prediction_sessions_user_market", "user_id", "market_id"),
    )


class Prediction(Base):
    """Probability prediction produced by one model."""
    __tablename__ = "predictions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String(255), ForeignKey("markets.id"), nullable=False)
    session_id = Column(String(36), ForeignKey("prediction_sessions.id"))

    model_name = Column(String(255), nullable=False)

    # Result
    outcomes = Column(JSON, nullable=False)
    outcome_probabilities = Column(JSON, nullable=False)
    reasoning = Column(Text)
    confidence_level = Column(String(20))  # "High", "Medium", "Low"

    # Prompt / raw response
    system_prompt = Column(Text)
    user_message = Column(Text)
    ai_response = Column(Text)

    created_at = Column(DateTime, default=utcnow)

    # Relationships
    market = relationship("Market", back_populates="predictions")
    session = relationship("PredictionSession", back_populates="predictions")

    __table_args__ = (
        Index("idx_predictions_created_at", "created_at"),
        Index("idx_predictions_session", "session_id"),
    )


class ResearchCache(Base):
    """Cached research response for one (market, source) pair."""
    __tablename__ = "research_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    market_id = Column(String(255), nullable=False)
    source = Column(String(50), nullable=False)  # "exa", "exa-two-step", "grok", "perplexity"

    # Provenance of the provider call
    model_name = Column(String(255))
    system_message = Column(Text)
    user_message = Column(Text)

    # {"relevant_information": str, "links": [str], "confidence_score": float, ...}
    response = Column(JSON, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True)

    # Relationships
    sessions = relationship("PredictionSession", secondary=prediction_session_research, back_populates="research")

    __table_args__ = (
        Index("idx_research_cache_market_source", "market_id", "source", "created_at"),
    )
