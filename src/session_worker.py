#!/usr/bin/env python3
"""
Prediction session worker.

Runs one prediction session end to end:

    load session -> research (cache first, one source at a time)
                 -> models (bounded pool) -> FINISHED
                                          -> refund + ERROR when every model failed

Model and research failures are recorded as data. Only storage failures
escape execute(), and execute_with_retry() re-runs the session for those.

Functions for job runners:
    execute_prediction_session(session_id) -> WorkerResult
    execute_prediction_session_with_retry(session_id, max_attempts=3) -> WorkerResult

CLI Usage:
    python -m src.session_worker <session_id>
    python -m src.session_worker <session_id> --max-attempts 5
"""

import argparse
import logging
import sys
import time
from typing import Callable, Optional

from config.logging_config import setup_logging
from config.settings import settings
from db.connection import SessionLocal, init_db
from models.market import MarketContext
from models.session import PredictionSessionData, SessionStatus
from models.worker import ModelExecutionSummary, ModelFailure, WorkerResult
from src.credit_ledger import CreditLedger
from src.errors import InfrastructureError, InvalidTransitionError, RefundError, SessionNotFoundError
from src.interfaces import (
    CreditLedgerProtocol,
    ModelProviderProtocol,
    ResearchCacheProtocol,
    ResearchProviderProtocol,
    SessionStoreProtocol,
)
from src.model_execution import execute_models
from src.model_provider import OpenRouterModelProvider
from src.research_cache import ResearchCache
from src.research_orchestrator import build_research_context, gather_research
from src.research_providers import ResearchProvider
from src.session_store import SessionStore

logger = logging.getLogger(__name__)

# Terminal steps of a run that completed with every model failing
REFUNDED_STEP = "All models failed - credits refunded"
REFUND_FAILED_STEP = "All models failed - credit refund failed"
COMPLETED_ERROR_STEPS = (REFUNDED_STEP, REFUND_FAILED_STEP)


class SessionWorker:
    """
    Executes prediction sessions against injected collaborators.

    Args:
        store: Session store (authoritative session state)
        cache: Research cache
        research_provider: Provider for research cache misses
        model_provider: Provider for model predictions
        ledger: Credit ledger used for refunds
        config: Settings (pool size, delays, backoff)
        sleep: Sleep function used for research delays and retry backoff
    """

    def __init__(
        self,
        store: SessionStoreProtocol,
        cache: ResearchCacheProtocol,
        research_provider: ResearchProviderProtocol,
        model_provider: ModelProviderProtocol,
        ledger: CreditLedgerProtocol,
        config=settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.cache = cache
        self.research_provider = research_provider
        self.model_provider = model_provider
        self.ledger = ledger
        self.config = config
        self.sleep = sleep

    # =========================================================================
    # SINGLE RUN
    # =========================================================================

    def execute(self, session_id: str) -> WorkerResult:
        """
        Run a session once.

        Raises:
            InfrastructureError: the session store failed; the run may be retried
        """
        session = self.store.get(session_id)
        if session is None:
            logger.error("Session not found: %s", session_id)
            return WorkerResult.failed(f"Session not found: {session_id}")

        if session.is_terminal:
            logger.info("Session %s already %s, nothing to do", session_id, session.status.value)
            return self._stored_outcome(session)

        total = len(session.selected_models)
        logger.info(
            "🚀 Executing session %s: market %s, %d model(s), %d research source(s)",
            session_id, session.market_id, total, len(session.selected_research_sources),
        )

        market = self.store.get_market(session.market_id)
        if market is None:
            message = f"Market not found: {session.market_id}"
            logger.error("Session %s: %s", session_id, message)
            summary = ModelExecutionSummary(
                total=total,
                failure_count=total,
                failures=[ModelFailure(model_id=m, message=message) for m in session.selected_models],
            )
            return self._finish(session, summary)

        context = self._research(session, market)

        self.store.update(
            session_id,
            status=SessionStatus.GENERATING,
            step=f"Generating predictions with {total} model(s)",
        )
        summary = execute_models(
            session_id=session_id,
            market_id=session.market_id,
            model_ids=session.selected_models,
            provider=self.model_provider,
            store=self.store,
            context=context or None,
            max_workers=self.config.model_pool_size,
        )
        logger.info(
            "Session %s: %d/%d model(s) succeeded", session_id, summary.success_count, summary.total,
        )
        return self._finish(session, summary)

    def _research(self, session: PredictionSessionData, market: MarketContext) -> str:
        sources = session.selected_research_sources
        if not sources:
            return ""

        self.store.update(
            session.id,
            status=SessionStatus.RESEARCHING,
            step=f"Gathering research from {len(sources)} source(s)",
        )
        results = gather_research(
            session,
            market,
            store=self.store,
            cache=self.cache,
            provider=self.research_provider,
            delay=self.config.research_rate_limit_delay,
            sleep=self.sleep,
        )
        return build_research_context(results)

    def _finish(self, session: PredictionSessionData, summary: ModelExecutionSummary) -> WorkerResult:
        """Write the terminal status, refunding the session if every model failed."""
        result = WorkerResult(
            success=True,
            total_models=summary.total,
            success_count=summary.success_count,
            failure_count=summary.failure_count,
        )

        if not summary.all_failed:
            self.store.update(
                session.id,
                status=SessionStatus.FINISHED,
                step=f"Completed {summary.success_count}/{summary.total} predictions",
            )
            logger.info("🏁 Session %s finished (%d/%d)", session.id, summary.success_count, summary.total)
            return result

        try:
            self._refund(session, summary.total)
        except RefundError as e:
            logger.error("❌ Credit refund failed for session %s: %s", session.id, e)
            self.store.update(
                session.id,
                status=SessionStatus.ERROR,
                step=REFUND_FAILED_STEP,
                error=f"All models failed and credit refund failed: {e}",
            )
            return result

        self.store.update(
            session.id,
            status=SessionStatus.ERROR,
            step=REFUNDED_STEP,
            error=f"All {summary.total} models failed to generate predictions",
        )
        return result

    def _refund(self, session: PredictionSessionData, amount: int) -> None:
        # An earlier attempt refunded but died before writing the status
        if session.compensated_at is not None:
            logger.info("Session %s was already refunded at %s", session.id, session.compensated_at)
            return

        balance = self.ledger.refund(
            session.user_id,
            amount,
            f"All models failed for session {session.id}",
            metadata={"market_id": session.market_id},
            session_id=session.id,
        )
        logger.info("💰 Refunded %d credit(s) to %s for session %s (balance %d)", amount, session.user_id, session.id, balance)

    def _stored_outcome(self, session: PredictionSessionData) -> WorkerResult:
        """
        Describe a session that already reached a terminal state.

        Matches what the completing run returned: a run that ended with every
        model failing still counts as success, with the failure in its counts.
        Only sessions that never completed a run (worker failures) report an error.
        """
        total = len(session.selected_models)
        success_count = min(len(session.prediction_ids), total)
        completed = session.status == SessionStatus.FINISHED or session.step in COMPLETED_ERROR_STEPS
        return WorkerResult(
            success=completed,
            total_models=total,
            success_count=success_count,
            failure_count=total - success_count,
            error=None if completed else session.error,
        )

    # =========================================================================
    # RETRY
    # =========================================================================

    def execute_with_retry(self, session_id: str, max_attempts: int = None) -> WorkerResult:
        """
        Run a session, re-running it when a run raises.

        A returned result is final, even an unsuccessful one. Between attempts
        the worker waits worker_backoff_base_seconds * 2**attempt seconds.
        After the last failed attempt the session is marked ERROR.

        Args:
            session_id: Session to run
            max_attempts: Total attempts (defaults to worker_max_attempts)

        Returns:
            The first returned WorkerResult, or a zeroed failure result

        Raises:
            ValueError: max_attempts is below 1
        """
        if max_attempts is None:
            max_attempts = self.config.worker_max_attempts
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        last_error: Optional[Exception] = None

        for attempt in range(1, max_attempts + 1):
            try:
                return self.execute(session_id)
            except Exception as e:
                last_error = e
                logger.warning("⚠️  Worker attempt %d/%d failed for session %s: %s", attempt, max_attempts, session_id, e)
                if attempt < max_attempts:
                    delay = self.config.worker_backoff_base_seconds * 2 ** attempt
                    logger.info("   Retrying session %s in %.1fs", session_id, delay)
                    self.sleep(delay)

        message = f"Worker failed after {max_attempts} attempts: {last_error}"
        logger.error("❌ %s (session %s)", message, session_id)
        try:
            self.store.update(
                session_id,
                status=SessionStatus.ERROR,
                step="Worker failed",
                error=message,
            )
        except (InvalidTransitionError, SessionNotFoundError, InfrastructureError) as e:
            logger.error("Could not mark session %s as failed: %s", session_id, e)

        return WorkerResult.failed(message)


# =============================================================================
# PUBLIC API
# =============================================================================

def build_worker(session_factory=SessionLocal, config=settings) -> SessionWorker:
    """Worker wired to the database and the configured providers."""
    return SessionWorker(
        store=SessionStore(session_factory),
        cache=ResearchCache(session_factory),
        research_provider=ResearchProvider(config),
        model_provider=OpenRouterModelProvider(session_factory),
        ledger=CreditLedger(session_factory, config),
        config=config,
    )


def execute_prediction_session(session_id: str, worker: SessionWorker = None) -> WorkerResult:
    """Run a prediction session once. Storage failures propagate."""
    worker = worker or build_worker()
    return worker.execute(session_id)


def execute_prediction_session_with_retry(
    session_id: str,
    max_attempts: int = 3,
    worker: SessionWorker = None,
) -> WorkerResult:
    """Run a prediction session, retrying with exponential backoff when a run raises."""
    worker = worker or build_worker()
    return worker.execute_with_retry(session_id, max_attempts=max_attempts)


# =============================================================================
# MAIN (CLI entry point)
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Execute a prediction session")
    parser.add_argument("session_id", help="Prediction session id")
    parser.add_argument(
        "--max-attempts", type=int, default=settings.worker_max_attempts,
        help="Attempts before the session is marked as failed"
    )
    parser.add_argument(
        "--log-level", type=str, default=None,
        help="Override LOG_LEVEL"
    )
    args = parser.parse_args()

    setup_logging(args.log_level)
    init_db()

    result = execute_prediction_session_with_retry(args.session_id, max_attempts=args.max_attempts)

    if result.error:
        print(f"\n❌ {result.error}")
    else:
        print(f"\n📊 Session {args.session_id}: {result.success_count}/{result.total_models} predictions "
              f"({result.failure_count} failed)")
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
