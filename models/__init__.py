"""
Shared Pydantic models for the prediction session worker.

These models define the data structures that flow between the worker's
stages, ensuring type safety and validation across the entire system.
"""

from models.session import (
    SessionStatus,
    TERMINAL_STATUSES,
    ACTIVE_STATUSES,
    PredictionSessionData,
    SessionUpdate,
    can_transition,
    check_transition,
)
from models.market import (
    MarketContext,
)
from models.research import (
    ResearchResult,
    ProviderCall,
    CacheEntry,
)
from models.prediction import (
    PredictionResult,
    GenerationResult,
)
from models.worker import (
    WorkerResult,
    ModelFailure,
    ModelExecutionSummary,
    RecoveryResult,
)
from models.credits import (
    CreditBalance,
    CreditStats,
)

__all__ = [
    # Session
    "SessionStatus",
    "TERMINAL_STATUSES",
    "ACTIVE_STATUSES",
    "PredictionSessionData",
    "SessionUpdate",
    "can_transition",
    "check_transition",
    # Market
    "MarketContext",
    # Research
    "ResearchResult",
    "ProviderCall",
    "CacheEntry",
    # Prediction
    "PredictionResult",
    "GenerationResult",
    # Worker
    "WorkerResult",
    "ModelFailure",
    "ModelExecutionSummary",
    "RecoveryResult",
    # Credits
    "CreditBalance",
    "CreditStats",
]
