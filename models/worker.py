"""
Worker models - results reported by the session worker and its stages.

None of these are persisted; the session row is the durable record.
"""

from typing import Optional
from pydantic import BaseModel, Field


class WorkerResult(BaseModel):
    """
    Result of one worker run.

    Whenever `error` is absent, success_count + failure_count == total_models.
    """
    success: bool
    total_models: int = 0
    success_count: int = 0
    failure_count: int = 0
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "WorkerResult":
        """Zeroed result for a run that never reached the model stage."""
        return cls(success=False, total_models=0, success_count=0, failure_count=0, error=error)


class ModelFailure(BaseModel):
    model_id: str
    message: str


class ModelExecutionSummary(BaseModel):
    """Counts from the model execution stage, after every model has been attempted."""
    total: int
    success_count: int = 0
    failure_count: int = 0
    prediction_ids: list[int] = Field(default_factory=list)
    failures: list[ModelFailure] = Field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return self.total > 0 and self.success_count == 0


class RecoveryResult(BaseModel):
    """Summary of one stuck-session recovery pass."""
    processed: int = 0
    recovered: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
