#!/usr/bin/env python3
"""
Session recovery - re-run sessions that never reached a terminal state.

A session is stuck when it is still INITIALIZING, QUEUED, RESEARCHING or
GENERATING after the recovery timeout (its worker died or was never
triggered). Stuck sessions are re-run one at a time through the retry
wrapper. Cleanup removes old ERROR sessions.

CLI Usage:
    python -m src.session_recovery                      # Recover stuck sessions
    python -m src.session_recovery --timeout-minutes 30
    python -m src.session_recovery --cleanup            # Also delete old failed sessions
"""

import argparse
import logging
import time
from datetime import timedelta
from typing import Callable

from config.logging_config import setup_logging
from config.settings import settings
from db.connection import init_db
from db.models import utcnow
from models.worker import RecoveryResult
from src.session_store import SessionStore
from src.session_worker import SessionWorker, build_worker

logger = logging.getLogger(__name__)

# Pause between recovered sessions
RECOVERY_DELAY_SECONDS = 1.0


def recover_stuck_sessions(
    timeout_minutes: int = None,
    store: SessionStore = None,
    worker: SessionWorker = None,
    batch_size: int = None,
    max_attempts: int = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RecoveryResult:
    """
    Re-run sessions stuck in a non-terminal state for longer than `timeout_minutes`.

    Args:
        timeout_minutes: Age after which a non-terminal session counts as stuck
        store: Session store (defaults to the database store)
        worker: Session worker (defaults to build_worker())
        batch_size: Maximum sessions per pass
        max_attempts: Worker attempts per session
        sleep: Sleep function used between sessions

    Returns:
        RecoveryResult counting processed, recovered and failed sessions
    """
    if timeout_minutes is None:
        timeout_minutes = settings.recovery_timeout_minutes
    if batch_size is None:
        batch_size = settings.recovery_batch_size
    if max_attempts is None:
        max_attempts = settings.recovery_max_attempts
    store = store or SessionStore()
    worker = worker or build_worker()

    cutoff = utcnow() - timedelta(minutes=timeout_minutes)
    stuck = store.find_stuck(cutoff, limit=batch_size)
    result = RecoveryResult()

    if not stuck:
        logger.info("No stuck sessions older than %d minutes", timeout_minutes)
        return result

    logger.info("🔧 Recovering %d stuck session(s)", len(stuck))
    for i, session in enumerate(stuck):
        result.processed += 1
        logger.info("[%d/%d] Session %s (%s, created %s)", i + 1, len(stuck), session.id, session.status.value, session.created_at)

        outcome = worker.execute_with_retry(session.id, max_attempts=max_attempts)
        if outcome.success:
            result.recovered += 1
        else:
            result.failed += 1
            result.errors.append(f"Session {session.id}: {outcome.error or 'all models failed'}")

        if i < len(stuck) - 1:
            sleep(RECOVERY_DELAY_SECONDS)

    logger.info("📊 Recovery: %d processed, %d recovered, %d failed", result.processed, result.recovered, result.failed)
    return result


def cleanup_old_sessions(hours_old: int = None, store: SessionStore = None) -> int:
    """
    Delete ERROR sessions older than `hours_old` hours.

    Returns:
        Number of sessions deleted
    """
    if hours_old is None:
        hours_old = settings.cleanup_hours_old
    store = store or SessionStore()
    deleted = store.delete_old_failed(utcnow() - timedelta(hours=hours_old))
    logger.info("🧹 Deleted %d failed session(s) older than %dh", deleted, hours_old)
    return deleted


# =============================================================================
# MAIN (CLI entry point)
# =============================================================================

def main():
    parser = argparse.ArgumentParser(description="Recover stuck prediction sessions")
    parser.add_argument(
        "--timeout-minutes", type=int, default=settings.recovery_timeout_minutes,
        help="Age after which a non-terminal session is considered stuck"
    )
    parser.add_argument(
        "--cleanup", action="store_true",
        help="Also delete failed sessions older than CLEANUP_HOURS_OLD"
    )
    args = parser.parse_args()

    setup_logging()
    init_db()

    result = recover_stuck_sessions(timeout_minutes=args.timeout_minutes)
    print(f"\n📊 Processed {result.processed}: {result.recovered} recovered, {result.failed} failed")
    for error in result.errors:
        print(f"   ❌ {error}")

    if args.cleanup:
        deleted = cleanup_old_sessions()
        print(f"🧹 Deleted {deleted} old failed session(s)")


if __name__ == "__main__":
    main()
