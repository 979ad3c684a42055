"""
Collaborator interfaces consumed by the session worker.

The concrete implementations live next to this module (SessionStore,
ResearchCache, CreditLedger, OpenRouterModelProvider, ResearchProvider); tests
substitute fakes that satisfy the same shape.
"""

from datetime import datetime
from typing import Optional, Protocol

from models.market import MarketContext
from models.prediction import GenerationResult
from models.research import CacheEntry, ProviderCall
from models.session import PredictionSessionData, SessionStatus


class SessionStoreProtocol(Protocol):
    def get(self, session_id: str) -> Optional[PredictionSessionData]: ...

    def update(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        step: Optional[str] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> None: ...

    def get_market(self, market_id: str) -> Optional[MarketContext]: ...

    def link_prediction(self, prediction_id: int, session_id: str) -> None: ...

    def link_research(self, session_id: str, cache_id: int) -> None: ...


class ModelProviderProtocol(Protocol):
    def generate(self, market_id: str, model_id: str, context: Optional[str]) -> GenerationResult: ...


class ResearchProviderProtocol(Protocol):
    def research(self, market: MarketContext, source: str) -> ProviderCall: ...


class ResearchCacheProtocol(Protocol):
    def get_by_source(self, market_id: str, source: str) -> Optional[CacheEntry]: ...

    def create(
        self,
        market_id: str,
        source: str,
        response: dict,
        model_name: Optional[str] = None,
        system_message: Optional[str] = None,
        user_message: Optional[str] = None,
    ) -> CacheEntry: ...


class CreditLedgerProtocol(Protocol):
    def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        metadata: Optional[dict] = None,
        session_id: Optional[str] = None,
    ) -> int: ...
