"""Tests for stuck-session recovery and cleanup."""

from datetime import timedelta
from unittest.mock import MagicMock

from db.models import PredictionSession, utcnow
from models.session import SessionStatus
from models.worker import WorkerResult
from src.session_recovery import cleanup_old_sessions, recover_stuck_sessions


def _backdate(session_factory, session_id, **delta):
    db = session_factory()
    db.get(PredictionSession, session_id).created_at = utcnow() - timedelta(**delta)
    db.commit()
    db.close()


def test_recovers_only_old_active_sessions(store, user, market, session_factory):
    stuck = store.create(user, market, ["a"], status=SessionStatus.RESEARCHING)
    recent = store.create(user, market, ["a"])
    done = store.create(user, market, ["a"])
    store.update(done.id, status=SessionStatus.ERROR, error="x")
    _backdate(session_factory, stuck.id, minutes=30)
    _backdate(session_factory, done.id, minutes=30)

    worker = MagicMock()
    worker.execute_with_retry.return_value = WorkerResult(success=True, total_models=1, success_count=1)
    sleeps = []

    result = recover_stuck_sessions(10, store=store, worker=worker, max_attempts=2, sleep=sleeps.append)

    worker.execute_with_retry.assert_called_once_with(stuck.id, max_attempts=2)
    assert (result.processed, result.recovered, result.failed) == (1, 1, 0)
    assert sleeps == []


def test_failed_recovery_is_reported(store, user, market, session_factory):
    first = store.create(user, market, ["a"])
    second = store.create(user, market, ["a"], status=SessionStatus.GENERATING)
    _backdate(session_factory, first.id, hours=2)
    _backdate(session_factory, second.id, hours=1)

    worker = MagicMock()
    worker.execute_with_retry.side_effect = [
        WorkerResult.failed("Worker failed after 2 attempts: database is locked"),
        WorkerResult(success=True, total_models=1, success_count=1),
    ]
    sleeps = []

    result = recover_stuck_sessions(10, store=store, worker=worker, sleep=sleeps.append)

    assert [c.args[0] for c in worker.execute_with_retry.call_args_list] == [first.id, second.id]
    assert (result.processed, result.recovered, result.failed) == (2, 1, 1)
    assert result.errors == [f"Session {first.id}: Worker failed after 2 attempts: database is locked"]
    assert sleeps == [1.0]


def test_batch_size_limits_a_pass(store, user, market, session_factory):
    for _ in range(3):
        session = store.create(user, market, ["a"])
        _backdate(session_factory, session.id, hours=1)
    worker = MagicMock()
    worker.execute_with_retry.return_value = WorkerResult(success=True)

    result = recover_stuck_sessions(10, store=store, worker=worker, batch_size=2, sleep=lambda s: None)

    assert result.processed == 2


def test_nothing_stuck(store):
    worker = MagicMock()
    result = recover_stuck_sessions(10, store=store, worker=worker)
    assert result.processed == 0
    worker.execute_with_retry.assert_not_called()


def test_cleanup_deletes_old_failed_sessions(store, user, market, session_factory):
    old = store.create(user, market, ["a"])
    store.update(old.id, status=SessionStatus.ERROR, error="x")
    _backdate(session_factory, old.id, hours=48)
    recent = store.create(user, market, ["a"])
    store.update(recent.id, status=SessionStatus.ERROR, error="x")

    assert cleanup_old_sessions(24, store=store) == 1
    assert store.get(old.id) is None
    assert store.get(recent.id) is not None


def test_zero_timeout_recovers_recent_sessions(store, user, market, session_factory):
    session = store.create(user, market, ["a"])
    _backdate(session_factory, session.id, seconds=5)
    worker = MagicMock()
    worker.execute_with_retry.return_value = WorkerResult(success=True)

    assert recover_stuck_sessions(store=store, worker=worker).processed == 0
    result = recover_stuck_sessions(0, store=store, worker=worker, sleep=lambda s: None)

    assert result.processed == 1
    assert worker.execute_with_retry.call_args.args == (session.id,)


def test_zero_batch_size_processes_nothing(store, user, market, session_factory):
    session = store.create(user, market, ["a"])
    _backdate(session_factory, session.id, hours=1)
    worker = MagicMock()

    result = recover_stuck_sessions(10, store=store, worker=worker, batch_size=0)

    assert result.processed == 0
    worker.execute_with_retry.assert_not_called()


def test_cleanup_with_zero_hours_deletes_recent_failures(store, user, market, session_factory):
    session = store.create(user, market, ["a"])
    store.update(session.id, status=SessionStatus.ERROR, error="x")
    _backdate(session_factory, session.id, seconds=5)

    assert cleanup_old_sessions(store=store) == 0
    assert cleanup_old_sessions(0, store=store) == 1
    assert store.get(session.id) is None
