"""Tests for the session status state machine and the session store."""

from datetime import timedelta

import pytest

from db.models import PredictionSession, utcnow
from models.session import (
    ACTIVE_STATUSES,
    PredictionSessionData,
    SessionStatus,
    TERMINAL_STATUSES,
    can_transition,
    check_transition,
)
from src.errors import InvalidTransitionError, SessionNotFoundError


class TestTransitions:
    def test_terminal_statuses(self):
        assert TERMINAL_STATUSES == {SessionStatus.FINISHED, SessionStatus.ERROR}
        assert not ACTIVE_STATUSES & TERMINAL_STATUSES

    @pytest.mark.parametrize("terminal", [SessionStatus.FINISHED, SessionStatus.ERROR])
    @pytest.mark.parametrize("target", list(SessionStatus))
    def test_nothing_leaves_a_terminal_state(self, terminal, target):
        assert not can_transition(terminal, target)
        with pytest.raises(InvalidTransitionError):
            check_transition(terminal, target)

    @pytest.mark.parametrize("status", sorted(ACTIVE_STATUSES, key=lambda s: s.value))
    def test_any_active_state_may_fail(self, status):
        assert can_transition(status, SessionStatus.ERROR)

    def test_happy_path(self):
        check_transition(SessionStatus.INITIALIZING, SessionStatus.RESEARCHING)
        check_transition(SessionStatus.RESEARCHING, SessionStatus.GENERATING)
        check_transition(SessionStatus.GENERATING, SessionStatus.FINISHED)

    def test_no_research_goes_straight_to_generating(self):
        assert can_transition(SessionStatus.QUEUED, SessionStatus.GENERATING)

    def test_cannot_finish_before_generating(self):
        assert not can_transition(SessionStatus.RESEARCHING, SessionStatus.FINISHED)
        assert not can_transition(SessionStatus.INITIALIZING, SessionStatus.FINISHED)


class TestSessionData:
    def test_duplicates_collapse_in_order(self):
        data = PredictionSessionData(
            id="s", user_id="u", market_id="m",
            selected_models=["a", "b", "a"],
            selected_research_sources=["grok", "exa", "grok"],
            status=SessionStatus.QUEUED,
        )
        assert data.selected_models == ["a", "b"]
        assert data.selected_research_sources == ["grok", "exa"]

    def test_at_least_one_model(self):
        with pytest.raises(ValueError):
            PredictionSessionData(id="s", user_id="u", market_id="m", selected_models=[], status=SessionStatus.QUEUED)


class TestSessionStore:
    def test_create_and_get(self, store, user, market):
        created = store.create(user, market, ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"], ["exa"])
        loaded = store.get(created.id)

        assert loaded.status == SessionStatus.INITIALIZING
        assert loaded.selected_models == ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"]
        assert loaded.selected_research_sources == ["exa"]
        assert loaded.credits_debited == 2
        assert loaded.prediction_ids == []

    def test_get_unknown(self, store):
        assert store.get("missing") is None

    def test_update_sets_completed_at_on_finish(self, store, user, market):
        session = store.create(user, market, ["m1"])
        store.update(session.id, status=SessionStatus.GENERATING, step="Generating predictions with 1 model(s)")
        store.update(session.id, status=SessionStatus.FINISHED, step="Completed 1/1 predictions")

        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.FINISHED
        assert loaded.step == "Completed 1/1 predictions"
        assert loaded.completed_at is not None

    def test_terminal_session_is_never_modified(self, store, user, market):
        session = store.create(user, market, ["m1"])
        store.update(session.id, status=SessionStatus.ERROR, error="boom")

        with pytest.raises(InvalidTransitionError):
            store.update(session.id, status=SessionStatus.GENERATING)
        with pytest.raises(InvalidTransitionError):
            store.update(session.id, step="late write")

        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.ERROR
        assert loaded.error == "boom"

    def test_update_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            store.update("missing", status=SessionStatus.ERROR)

    def test_link_prediction(self, store, user, market, make_prediction):
        session = store.create(user, market, ["m1"])
        prediction_id = make_prediction()
        store.link_prediction(prediction_id, session.id)
        assert store.get(session.id).prediction_ids == [prediction_id]

    def test_link_research_is_idempotent(self, store, cache, user, market, session_factory):
        session = store.create(user, market, ["m1"], ["exa"])
        entry = cache.create(market, "exa", {"relevant_information": "x", "links": []})
        store.link_research(session.id, entry.id)
        store.link_research(session.id, entry.id)

        db = session_factory()
        row = db.get(PredictionSession, session.id)
        assert [r.id for r in row.research] == [entry.id]
        db.close()

    def test_get_market(self, store, market):
        context = store.get_market(market)
        assert context.question.startswith("Will the Fed")
        assert context.outcomes == ["Yes", "No"]
        assert store.get_market("nope") is None

    def test_find_stuck_and_delete_old_failed(self, store, user, market, session_factory):
        old = store.create(user, market, ["m1"], status=SessionStatus.GENERATING)
        fresh = store.create(user, market, ["m1"])
        failed = store.create(user, market, ["m1"])
        store.update(failed.id, status=SessionStatus.ERROR, error="x")

        db = session_factory()
        for session_id in (old.id, failed.id):
            db.get(PredictionSession, session_id).created_at = utcnow() - timedelta(days=2)
        db.commit()
        db.close()

        stuck = store.find_stuck(utcnow() - timedelta(minutes=10))
        assert [s.id for s in stuck] == [old.id]

        assert store.delete_old_failed(utcnow() - timedelta(hours=24)) == 1
        assert store.get(failed.id) is None
        assert store.get(fresh.id) is not None
