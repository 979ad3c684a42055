"""
Research models - external research gathered for a market.

A ResearchResult is what a research provider returns and what the research
cache stores (minus the timestamp, which comes from the cache row).
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class ResearchResult(BaseModel):
    """Research gathered from a single source for a single market."""
    source: str
    relevant_information: str
    links: list[str] = Field(default_factory=list)
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    timestamp: datetime

    # Social sources (grok) only
    sentiment_analysis: Optional[str] = None
    key_accounts: Optional[list[str]] = None

    # Set when the result came from the cache
    cache_id: Optional[int] = None
    from_cache: bool = False

    def cache_payload(self) -> dict:
        """JSON body stored in the research cache."""
        return self.model_dump(
            mode="json",
            exclude={"timestamp", "cache_id", "from_cache"},
            exclude_none=True,
        )


class ProviderCall(BaseModel):
    """A provider response plus the provenance stored alongside it in the cache."""
    result: ResearchResult
    model_name: Optional[str] = None
    system_message: Optional[str] = None
    user_message: Optional[str] = None


class CacheEntry(BaseModel):
    """A row of the research cache."""
    id: int
    market_id: str
    source: str
    response: dict
    model_name: Optional[str] = None
    created_at: datetime

    def to_result(self) -> ResearchResult:
        return ResearchResult(
            **{**self.response, "source": self.source},
            timestamp=self.created_at,
            cache_id=self.id,
            from_cache=True,
        )

