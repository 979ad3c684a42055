"""Shared fixtures for prediction worker tests."""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import threading
from datetime import datetime
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base, Market, Prediction, User, utcnow
from models.prediction import GenerationResult
from models.research import ProviderCall, ResearchResult
from src.credit_ledger import CreditLedger
from src.errors import ResearchProviderError
from src.research_cache import ResearchCache
from src.session_store import SessionStore


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def user(session_factory):
    """A user who has already been charged for a two-model session."""
    db = session_factory()
    db.add(User(id="user-1", email="user@example.com", credits=98, total_credits_earned=100, total_credits_spent=2))
    db.commit()
    db.close()
    return "user-1"


@pytest.fixture
def market(session_factory):
    db = session_factory()
    db.add(Market(
        id="market-1",
        question="Will the Fed cut rates in December?",
        description="Resolves Yes if the FOMC lowers the target range at its December meeting.",
        outcomes=["Yes", "No"],
        end_date=datetime(2026, 12, 18),
        resolution_source="federalreserve.gov",
    ))
    db.commit()
    db.close()
    return "market-1"


@pytest.fixture
def store(session_factory):
    return SessionStore(session_factory)


@pytest.fixture
def cache(session_factory):
    return ResearchCache(session_factory)


@pytest.fixture
def ledger(session_factory):
    return CreditLedger(session_factory)


@pytest.fixture
def make_prediction(session_factory, market):
    """Insert a stored prediction row and return its id."""
    def _make(model_name="openai/gpt-4o"):
        db = session_factory()
        row = Prediction(
            market_id=market,
            model_name=model_name,
            outcomes=["Yes", "No"],
            outcome_probabilities=[0.6, 0.4],
            reasoning="test",
            created_at=utcnow(),
        )
        db.add(row)
        db.commit()
        prediction_id = row.id
        db.close()
        return prediction_id
    return _make


@pytest.fixture
def worker_config():
    """Settings stand-in with no delays."""
    return SimpleNamespace(
        model_pool_size=3,
        research_rate_limit_delay=0.0,
        worker_max_attempts=3,
        worker_backoff_base_seconds=1.0,
    )


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------


class FakeModelProvider:
    """
    Model provider returning canned outcomes per model id.

    An int outcome is a prediction id, an Exception is raised, and a string
    is a failure message.
    """

    def __init__(self, outcomes: dict):
        self.outcomes = outcomes
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, market_id, model_id, context=None):
        with self._lock:
            self.calls.append((market_id, model_id, context))
        outcome = self.outcomes[model_id]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return GenerationResult(success=False, message=outcome)
        return GenerationResult(success=True, prediction_id=outcome, message="ok")


class FakeResearchProvider:
    """Research provider recording calls; sources listed in `failing` raise."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def research(self, market, source):
        self.calls.append(source)
        if source in self.failing:
            raise ResearchProviderError(source, "provider down")
        return ProviderCall(
            result=ResearchResult(
                source=source,
                relevant_information=f"{source} findings about {market.question}",
                links=[f"https://example.com/{source}"],
                confidence_score=0.8,
                timestamp=utcnow(),
            ),
            model_name=f"{source}-model",
            system_message="system",
            user_message="user",
        )


@pytest.fixture
def fake_research_provider():
    return FakeResearchProvider()
