"""Tests for the session worker and its retry wrapper."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from conftest import FakeModelProvider, FakeResearchProvider
from models.session import SessionStatus
from models.worker import WorkerResult
from src.errors import InfrastructureError, InvalidTransitionError, RefundError
from src.research_providers import ResearchProvider
from src.session_worker import SessionWorker, execute_prediction_session, execute_prediction_session_with_retry


@pytest.fixture
def make_worker(store, cache, ledger, worker_config):
    def _make(model_outcomes, research_provider=None, ledger_=None, sleep=None):
        return SessionWorker(
            store=store,
            cache=cache,
            research_provider=research_provider or FakeResearchProvider(),
            model_provider=FakeModelProvider(model_outcomes),
            ledger=ledger_ or ledger,
            config=worker_config,
            sleep=sleep or (lambda seconds: None),
        )
    return _make


def _status_history(store_mock):
    return [c.kwargs.get("status") for c in store_mock.update.call_args_list if c.kwargs.get("status")]


class TestExecute:
    def test_all_models_succeed(self, make_worker, store, ledger, user, market, make_prediction):
        session = store.create(user, market, ["a", "b"])
        worker = make_worker({"a": make_prediction("a"), "b": make_prediction("b")})

        result = worker.execute(session.id)

        assert result.success
        assert (result.total_models, result.success_count, result.failure_count) == (2, 2, 0)
        assert result.error is None
        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.FINISHED
        assert loaded.step == "Completed 2/2 predictions"
        assert loaded.completed_at is not None
        assert len(loaded.prediction_ids) == 2
        assert ledger.get_balance(user).credits == 98

    def test_partial_success_finishes_without_refund(self, make_worker, store, ledger, user, market, make_prediction):
        session = store.create(user, market, ["a", "b", "c"], credits_debited=3)
        worker = make_worker({"a": make_prediction("a"), "b": RuntimeError("timeout"), "c": make_prediction("c")})

        result = worker.execute(session.id)

        assert (result.total_models, result.success_count, result.failure_count) == (3, 2, 1)
        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.FINISHED
        assert loaded.step == "Completed 2/3 predictions"
        assert loaded.compensated_at is None
        assert ledger.get_balance(user).credits == 98

    def test_all_models_fail_refunds(self, make_worker, store, ledger, user, market):
        session = store.create(user, market, ["a", "b"])
        worker = make_worker({"a": "invalid JSON", "b": RuntimeError("timeout")})

        result = worker.execute(session.id)

        assert result.success
        assert (result.total_models, result.success_count, result.failure_count) == (2, 0, 2)
        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.ERROR
        assert loaded.step == "All models failed - credits refunded"
        assert loaded.error == "All 2 models failed to generate predictions"
        assert loaded.compensated_at is not None
        assert ledger.get_balance(user).credits == 100

    def test_refund_called_with_total_models(self, make_worker, store, user, market):
        session = store.create(user, market, ["a", "b"])
        ledger = MagicMock()
        ledger.refund.return_value = 100
        worker = make_worker({"a": "x", "b": "y"}, ledger_=ledger)

        worker.execute(session.id)

        ledger.refund.assert_called_once_with(
            user, 2, f"All models failed for session {session.id}",
            metadata={"market_id": market}, session_id=session.id,
        )

    def test_refund_failure_is_recorded(self, make_worker, store, user, market):
        session = store.create(user, market, ["a", "b"])
        ledger = MagicMock()
        ledger.refund.side_effect = RefundError("ledger offline")
        worker = make_worker({"a": "x", "b": "y"}, ledger_=ledger)

        result = worker.execute(session.id)

        assert result.failure_count == 2
        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.ERROR
        assert loaded.error == "All models failed and credit refund failed: ledger offline"

    def test_research_runs_before_models(self, make_worker, store, cache, user, market, make_prediction):
        session = store.create(user, market, ["a"], ["exa", "grok"])
        research = FakeResearchProvider()
        worker = make_worker({"a": make_prediction()}, research_provider=research)

        worker.execute(session.id)

        assert research.calls == ["exa", "grok"]
        context = worker.model_provider.calls[0][2]
        assert "=== RESEARCH: EXA ===" in context
        assert "=== RESEARCH: GROK ===" in context

    def test_cached_research_is_not_fetched_again(self, make_worker, store, cache, user, market, make_prediction):
        cache.create(market, "exa", {"source": "exa", "relevant_information": "cached findings", "links": []})
        session = store.create(user, market, ["a"], ["exa"])
        research = FakeResearchProvider()
        worker = make_worker({"a": make_prediction()}, research_provider=research)

        worker.execute(session.id)

        assert research.calls == []
        assert "cached findings" in worker.model_provider.calls[0][2]

    def test_malformed_provider_replies_skip_research(self, make_worker, store, cache, user, market, make_prediction):
        session = store.create(user, market, ["a"], ["grok", "perplexity"])
        grok = MagicMock()
        grok.chat.completions.create.return_value = MagicMock(choices=[MagicMock(message=MagicMock(content=json.dumps({
            "relevant_information": "Traders on X expect a cut.",
            "links": ["https://x.com/a/status/1"],
            "key_accounts": [123],
        })))])
        http = MagicMock()
        http.post.return_value.json.return_value = {"choices": [{"message": {"content": "findings"}}], "citations": [42]}
        keys = SimpleNamespace(
            openrouter_api_key="or-key",
            openrouter_base_url="https://openrouter.ai/api/v1",
            perplexity_api_key="pplx-key",
            grok_model="x-ai/grok-4",
            search_model="sonar",
            request_timeout=30,
        )
        worker = make_worker(
            {"a": make_prediction()},
            research_provider=ResearchProvider(keys, openai_client=grok, http=http),
        )

        result = worker.execute(session.id)

        assert result.success
        assert result.success_count == 1
        assert store.get(session.id).status == SessionStatus.FINISHED
        assert cache.get_by_source(market, "grok") is None
        assert cache.get_by_source(market, "perplexity") is None
        assert worker.model_provider.calls[0][2] is None

    def test_status_sequence_with_research(self, make_worker, store, user, market, make_prediction):
        session = store.create(user, market, ["a"], ["exa"])
        spy = MagicMock(wraps=store)
        worker = make_worker({"a": make_prediction()})
        worker.store = spy

        worker.execute(session.id)

        assert _status_history(spy) == [SessionStatus.RESEARCHING, SessionStatus.GENERATING, SessionStatus.FINISHED]
        steps = [c.kwargs.get("step") for c in spy.update.call_args_list]
        assert steps[0] == "Gathering research from 1 source(s)"
        assert steps[1] == "Generating predictions with 1 model(s)"

    def test_no_sources_skips_researching(self, make_worker, store, user, market, make_prediction):
        session = store.create(user, market, ["a"])
        spy = MagicMock(wraps=store)
        cache = MagicMock()
        research = MagicMock()
        worker = make_worker({"a": make_prediction()}, research_provider=research)
        worker.store = spy
        worker.cache = cache

        worker.execute(session.id)

        assert SessionStatus.RESEARCHING not in _status_history(spy)
        assert not cache.method_calls
        assert not research.method_calls
        spy.link_research.assert_not_called()

    def test_unknown_session(self, worker_config):
        store = MagicMock()
        store.get.return_value = None
        worker = SessionWorker(store, MagicMock(), MagicMock(), MagicMock(), MagicMock(), config=worker_config)

        result = worker.execute("missing")

        assert not result.success
        assert (result.total_models, result.success_count, result.failure_count) == (0, 0, 0)
        assert result.error == "Session not found: missing"
        store.update.assert_not_called()

    def test_terminal_session_is_not_rerun(self, make_worker, store, ledger, user, market, make_prediction):
        session = store.create(user, market, ["a", "b"])
        worker = make_worker({"a": "x", "b": "y"})
        first = worker.execute(session.id)

        again = worker.execute(session.id)

        assert again == first
        assert again.success
        assert again.error is None
        assert (again.total_models, again.success_count, again.failure_count) == (2, 0, 2)
        assert len(worker.model_provider.calls) == 2
        assert ledger.get_balance(user).credits == 100

    def test_rerun_after_failed_refund_matches_first_run(self, make_worker, store, user, market):
        session = store.create(user, market, ["a", "b"])
        ledger = MagicMock()
        ledger.refund.side_effect = RefundError("ledger offline")
        worker = make_worker({"a": "x", "b": "y"}, ledger_=ledger)
        first = worker.execute(session.id)

        assert worker.execute(session.id) == first

    def test_rerun_of_worker_failure_reports_error(self, make_worker, store, user, market):
        session = store.create(user, market, ["a"])
        store.update(session.id, status=SessionStatus.ERROR, step="Worker failed",
                     error="Worker failed after 3 attempts: database is locked")
        worker = make_worker({"a": "x"})

        result = worker.execute(session.id)

        assert not result.success
        assert result.error == "Worker failed after 3 attempts: database is locked"
        assert (result.total_models, result.success_count, result.failure_count) == (1, 0, 1)
        assert worker.model_provider.calls == []

    def test_finished_session_reports_stored_counts(self, make_worker, store, user, market, make_prediction):
        session = store.create(user, market, ["a", "b"])
        worker = make_worker({"a": make_prediction(), "b": "x"})
        worker.execute(session.id)

        again = worker.execute(session.id)

        assert again.success
        assert (again.total_models, again.success_count, again.failure_count) == (2, 1, 1)

    def test_earlier_refund_is_not_repeated(self, make_worker, store, ledger, user, market):
        session = store.create(user, market, ["a", "b"])
        ledger.refund(user, 2, "All models failed", session_id=session.id)
        worker = make_worker({"a": "x", "b": "y"})

        worker.execute(session.id)

        loaded = store.get(session.id)
        assert loaded.status == SessionStatus.ERROR
        assert loaded.step == "All models failed - credits refunded"
        assert ledger.get_balance(user).credits == 100

    def test_missing_market_refunds(self, make_worker, store, ledger, user, market, session_factory):
        session = store.create(user, "market-gone", ["a", "b"])
        worker = make_worker({"a": 1, "b": 2})

        result = worker.execute(session.id)

        assert (result.success_count, result.failure_count) == (0, 2)
        assert worker.model_provider.calls == []
        assert store.get(session.id).status == SessionStatus.ERROR
        assert ledger.get_balance(user).credits == 100

    def test_storage_failure_propagates(self, worker_config):
        store = MagicMock()
        store.get.side_effect = InfrastructureError("database is locked")
        worker = SessionWorker(store, MagicMock(), MagicMock(), MagicMock(), MagicMock(), config=worker_config)

        with pytest.raises(InfrastructureError):
            worker.execute("s1")


class TestRetry:
    def _worker(self, worker_config, sleeps):
        return SessionWorker(MagicMock(), MagicMock(), MagicMock(), MagicMock(), MagicMock(),
                             config=worker_config, sleep=sleeps.append)

    def test_second_attempt_succeeds(self, worker_config):
        sleeps = []
        worker = self._worker(worker_config, sleeps)
        ok = WorkerResult(success=True, total_models=2, success_count=2, failure_count=0)

        with patch.object(worker, "execute", side_effect=[InfrastructureError("attempt 1"), ok]) as execute:
            result = worker.execute_with_retry("s1", max_attempts=2)

        assert result == ok
        assert execute.call_count == 2
        assert sleeps == [2.0]
        worker.store.update.assert_not_called()

    def test_exhausted_attempts_mark_error(self, worker_config):
        sleeps = []
        worker = self._worker(worker_config, sleeps)

        with patch.object(worker, "execute", side_effect=[RuntimeError("attempt 1"), RuntimeError("attempt 2")]):
            result = worker.execute_with_retry("s1", max_attempts=2)

        assert not result.success
        assert (result.total_models, result.success_count, result.failure_count) == (0, 0, 0)
        assert result.error == "Worker failed after 2 attempts: attempt 2"
        worker.store.update.assert_called_once_with(
            "s1", status=SessionStatus.ERROR, step="Worker failed", error="Worker failed after 2 attempts: attempt 2",
        )

    def test_backoff_doubles(self, worker_config):
        sleeps = []
        worker = self._worker(worker_config, sleeps)

        with patch.object(worker, "execute", side_effect=InfrastructureError("down")):
            worker.execute_with_retry("s1", max_attempts=4)

        assert sleeps == [2.0, 4.0, 8.0]

    def test_failed_result_is_not_retried(self, worker_config):
        worker = self._worker(worker_config, [])
        failed = WorkerResult.failed("Session not found: s1")

        with patch.object(worker, "execute", return_value=failed) as execute:
            assert worker.execute_with_retry("s1", max_attempts=3) == failed
        assert execute.call_count == 1

    def test_final_write_to_terminal_session_is_ignored(self, worker_config):
        worker = self._worker(worker_config, [])
        worker.store.update.side_effect = InvalidTransitionError("FINISHED", "ERROR")

        with patch.object(worker, "execute", side_effect=RuntimeError("boom")):
            result = worker.execute_with_retry("s1", max_attempts=1)

        assert result.error == "Worker failed after 1 attempts: boom"

    def test_default_attempts_from_config(self, worker_config):
        worker = self._worker(worker_config, [])
        with patch.object(worker, "execute", side_effect=RuntimeError("boom")) as execute:
            worker.execute_with_retry("s1")
        assert execute.call_count == 3

    def test_zero_attempts_rejected(self, worker_config):
        worker = self._worker(worker_config, [])
        with patch.object(worker, "execute") as execute:
            with pytest.raises(ValueError, match="at least 1"):
                worker.execute_with_retry("s1", max_attempts=0)
        execute.assert_not_called()
        worker.store.update.assert_not_called()


def test_module_functions_use_given_worker():
    worker = MagicMock()
    execute_prediction_session("s1", worker=worker)
    worker.execute.assert_called_once_with("s1")

    execute_prediction_session_with_retry("s1", max_attempts=2, worker=worker)
    worker.execute_with_retry.assert_called_once_with("s1", max_attempts=2)
