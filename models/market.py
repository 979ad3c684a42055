"""
Market models - the market a prediction session is about.

Research providers and the model provider build their prompts from this.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class MarketContext(BaseModel):
    """The market fields prompts are built from."""
    id: str
    question: str
    description: Optional[str] = None
    outcomes: list[str] = Field(default_factory=lambda: ["Yes", "No"])
    end_date: Optional[datetime] = None
    resolution_source: Optional[str] = None

    @property
    def end_date_str(self) -> Optional[str]:
        return self.end_date.date().isoformat() if self.end_date else None

    @classmethod
    def from_orm_market(cls, market) -> "MarketContext":
        """Build from a db.models.Market row."""
        return cls(
            id=market.id,
            question=market.question,
            description=market.description,
            outcomes=market.outcomes or ["Yes", "No"],
            end_date=market.end_date,
            resolution_source=market.resolution_source,
        )
