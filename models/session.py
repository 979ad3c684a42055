"""
Session models - prediction session state.

The session status is a closed set with two terminal members. Only the worker
moves a session between states, and nothing moves a session out of a terminal
state.
"""

import enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator

from src.errors import InvalidTransitionError


class SessionStatus(str, enum.Enum):
    INITIALIZING = "INITIALIZING"
    QUEUED = "QUEUED"
    RESEARCHING = "RESEARCHING"
    GENERATING = "GENERATING"
    FINISHED = "FINISHED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.FINISHED, SessionStatus.ERROR})

# Sessions a worker (or the recovery job) may pick up
ACTIVE_STATUSES = frozenset({
    SessionStatus.INITIALIZING,
    SessionStatus.QUEUED,
    SessionStatus.RESEARCHING,
    SessionStatus.GENERATING,
})

ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.INITIALIZING: frozenset({
        SessionStatus.QUEUED, SessionStatus.RESEARCHING, SessionStatus.GENERATING, SessionStatus.ERROR,
    }),
    SessionStatus.QUEUED: frozenset({
        SessionStatus.RESEARCHING, SessionStatus.GENERATING, SessionStatus.ERROR,
    }),
    SessionStatus.RESEARCHING: frozenset({
        SessionStatus.GENERATING, SessionStatus.ERROR,
    }),
    # A retried run starts over from the research phase
    SessionStatus.GENERATING: frozenset({
        SessionStatus.RESEARCHING, SessionStatus.FINISHED, SessionStatus.ERROR,
    }),
    SessionStatus.FINISHED: frozenset(),
    SessionStatus.ERROR: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """Whether a session in `current` may move to `target`."""
    if current == target and not current.is_terminal:
        return True
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: SessionStatus, target: SessionStatus) -> None:
    """Raise InvalidTransitionError if `current` -> `target` is not allowed."""
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)


def _dedupe(values: list[str]) -> list[str]:
    """Drop duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for value in values:
        if value not in seen:
            seen.add(value)
            result.append(value)
    return result


class PredictionSessionData(BaseModel):
    """Snapshot of a prediction session as seen by the worker."""
    id: str
    user_id: str
    market_id: str

    selected_models: list[str] = Field(min_length=1)
    selected_research_sources: list[str] = Field(default_factory=list)

    status: SessionStatus
    step: Optional[str] = None
    error: Optional[str] = None

    credits_debited: Optional[int] = None
    compensated_at: Optional[datetime] = None

    prediction_ids: list[int] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("selected_models", "selected_research_sources")
    @classmethod
    def _unique_in_order(cls, values: list[str]) -> list[str]:
        return _dedupe(values)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class SessionUpdate(BaseModel):
    """Patch applied to a session by the worker."""
    status: Optional[SessionStatus] = None
    step: Optional[str] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    def as_patch(self) -> dict:
        """Only the fields that were explicitly set."""
        return self.model_dump(exclude_unset=True)
