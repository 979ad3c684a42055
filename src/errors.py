"""
Error taxonomy for the prediction session worker.

Per-model and per-source failures are recovered locally and recorded as data.
Only InfrastructureError is expected to escape a worker run, and only the
retry wrapper catches it.
"""


class PredictionWorkerError(Exception):
    """Base class for all worker errors."""


class SessionNotFoundError(PredictionWorkerError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class InvalidTransitionError(PredictionWorkerError):
    """A status write would move a session out of a terminal state (or skip a phase)."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid session transition: {current} -> {target}")


class ModelGenerationError(PredictionWorkerError):
    def __init__(self, model_id: str, message: str):
        self.model_id = model_id
        super().__init__(f"{model_id}: {message}")


class ResearchProviderError(PredictionWorkerError):
    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source} research failed: {message}")


class CreditError(PredictionWorkerError):
    """Base class for credit ledger failures."""


class InsufficientCreditsError(CreditError):
    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits: {available} available, {required} required")


class RefundError(CreditError):
    pass


class InfrastructureError(PredictionWorkerError):
    """Storage or other plumbing failure; eligible for a whole-run retry."""
