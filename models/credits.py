"""Credit models - a user's balance as reported by the credit ledger."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class CreditBalance(BaseModel):
    credits: int
    total_credits_earned: int
    total_credits_spent: int
    credits_last_reset: Optional[datetime] = None


class CreditStats(BaseModel):
    """Platform-wide credit totals (admin / analytics)."""
    total_users: int
    total_credits_in_circulation: int
    total_credits_earned: int
    total_credits_spent: int
    users_with_low_credits: int
