"""
Tests for the resumable evaluation state machine.

Test Coverage:
- Fresh run to completion and score persistence
- Resume after cancel/pause with no repeated and no skipped keys
- Cooperative pause requested through the store
- Rate limit retry, exhaustion, quota and timeout pauses
- Service errors, non-advancing watermark and step guard
- Persistence failures
- Multi-language driver skipping and re-evaluation
"""

import pytest

import transync.core.database as db
from transync.ai.exceptions import (
    QuotaExceededError,
    RateLimitError,
    ServiceError,
    ServiceTimeoutError,
)
from transync.ai.client import EvaluationBatchResult
from transync.translation import evaluator
from transync.translation.evaluator import EvaluationOrchestrator
from transync.translation.progress import EvaluationProgress

from conftest import FRENCH_ROWS, GERMAN_ROWS, FailingStore, FakeEvaluationService, run

FR_KEYS = sorted(FRENCH_ROWS)


@pytest.fixture
def service():
    return FakeEvaluationService(FR_KEYS, batch_size=2)


@pytest.fixture
def orchestrator(seeded_db, service, settings, sleep):
    return EvaluationOrchestrator(service, settings=settings, sleep=sleep)


def progress(language_code="fr"):
    return EvaluationProgress.from_row(db.get_progress(language_code), language_code)


# =============================================================================
# Single language
# =============================================================================

class TestEvaluateLanguage:

    def test_fresh_run_completes(self, orchestrator, service):
        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "completed"
        assert outcome.steps == 3
        assert outcome.evaluated_keys == outcome.total_keys == 6
        assert service.calls == [("fr", None), ("fr", FR_KEYS[1]), ("fr", FR_KEYS[3])]

        state = progress()
        assert state.status == "completed"
        assert state.evaluated_keys == state.total_keys == 6
        assert state.completed_at

    def test_scores_are_persisted(self, orchestrator):
        run(orchestrator.evaluate_language("fr"))

        row = db.get_translation("fr", "nav.home")
        assert row["quality_score"] == 90
        assert row["quality_metrics"] == {"accuracy": 90}

    def test_checkpoint_written_after_each_partial(self, orchestrator, service):
        seen = []
        service_evaluate = service.evaluate

        async def spying_evaluate(*args, **kwargs):
            seen.append(progress().last_evaluated_key)
            return await service_evaluate(*args, **kwargs)

        service.evaluate = spying_evaluate
        run(orchestrator.evaluate_language("fr"))

        assert seen == [None, FR_KEYS[1], FR_KEYS[3]]

    def test_step_delay_between_calls(self, orchestrator, sleep):
        run(orchestrator.evaluate_language("fr"))
        assert sleep.delays == [0, 0]

    def test_progress_callback(self, orchestrator):
        updates = []
        run(orchestrator.evaluate_language("fr", progress_callback=updates.append))
        assert [(p.processed, p.total) for p in updates] == [(2, 6), (4, 6)]

    def test_completed_language_is_not_rerun(self, orchestrator, service):
        run(orchestrator.evaluate_language("fr"))
        calls = len(service.calls)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "completed"
        assert outcome.message == "Already completed"
        assert len(service.calls) == calls


class TestResume:

    def test_cancel_then_resume_has_no_repeats_or_gaps(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, batch_size=2)
        first = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(first.evaluate_language("fr", cancel_check=lambda: len(service.calls) >= 2))

        assert outcome.status == "paused"
        state = progress()
        assert state.status == "paused"
        assert state.last_evaluated_key == FR_KEYS[3]
        assert state.evaluated_keys == 4

        second = EvaluationOrchestrator(service, settings=settings, sleep=sleep)
        outcome = run(second.evaluate_language("fr"))

        assert outcome.status == "completed"
        assert service.calls[2] == ("fr", FR_KEYS[3])
        assert service.evaluated == FR_KEYS
        assert progress().evaluated_keys == 6

    def test_many_pause_resume_cycles(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, batch_size=1)

        for _ in range(10):
            calls_before = len(service.calls)
            orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)
            outcome = run(orchestrator.evaluate_language(
                "fr", cancel_check=lambda: len(service.calls) > calls_before))
            if outcome.status == "completed":
                break

        assert outcome.status == "completed"
        assert service.evaluated == FR_KEYS
        state = progress()
        assert state.evaluated_keys == state.total_keys == 6

    def test_crash_left_in_progress_resumes_from_watermark(self, orchestrator, service):
        db.update_progress("fr", status="in_progress", total_keys=6, evaluated_keys=2,
                           last_evaluated_key=FR_KEYS[1])

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "completed"
        assert service.calls[0] == ("fr", FR_KEYS[1])
        assert service.evaluated == FR_KEYS[2:]

    def test_pause_requested_through_store(self, orchestrator, service):
        async def pausing_evaluate(*args, **kwargs):
            result = await FakeEvaluationService.evaluate(service, *args, **kwargs)
            evaluator.pause_evaluation("fr")
            return result

        service.evaluate = pausing_evaluate

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "paused"
        assert "paused by request" in outcome.message
        assert len(service.calls) == 1
        assert progress().last_evaluated_key == FR_KEYS[1]

    def test_restart_starts_from_first_key(self, orchestrator, service):
        db.update_progress("fr", status="paused", total_keys=6, evaluated_keys=4,
                           last_evaluated_key=FR_KEYS[3])

        run(orchestrator.evaluate_language("fr", restart=True))

        assert service.calls[0] == ("fr", None)
        assert service.evaluated == FR_KEYS


# =============================================================================
# Failures
# =============================================================================

class TestEvaluationFailures:

    def test_rate_limit_retries_same_sub_batch(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, failures={2: RateLimitError(retry_after=7)})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "completed"
        assert service.calls[1] == service.calls[2] == ("fr", FR_KEYS[1])
        assert 7 in sleep.delays
        assert service.evaluated == FR_KEYS

    def test_exhausted_rate_limit_pauses(self, seeded_db, settings, sleep):
        settings.max_rate_limit_retries = 2
        settings.rate_limit_backoff_seconds = 30
        service = FakeEvaluationService(FR_KEYS, failures={n: RateLimitError() for n in (2, 3, 4)})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "paused"
        assert sleep.delays.count(30) == 2
        state = progress()
        assert state.status == "paused"
        assert state.last_evaluated_key == FR_KEYS[1]
        assert state.error_count == 0

    def test_quota_pauses_with_distinct_flag(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, failures={2: QuotaExceededError()})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "paused"
        assert outcome.quota_exceeded is True
        state = progress()
        assert state.status == "paused"
        assert "quota" in state.last_error
        assert state.last_evaluated_key == FR_KEYS[1]

    def test_timeout_pauses_and_resumes(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, failures={2: ServiceTimeoutError()})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        assert run(orchestrator.evaluate_language("fr")).status == "paused"
        assert run(orchestrator.evaluate_language("fr")).status == "completed"
        assert service.evaluated == FR_KEYS

    def test_service_error_moves_to_error(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, failures={2: ServiceError("boom", status_code=500)})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "error"
        state = progress()
        assert state.status == "error"
        assert state.error_count == 1
        assert state.last_error == state.error_message == "boom"

    def test_error_state_requires_reset(self, seeded_db, settings, sleep):
        service = FakeEvaluationService(FR_KEYS, failures={1: ServiceError("boom")})
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)
        run(orchestrator.evaluate_language("fr"))

        outcome = run(orchestrator.evaluate_language("fr"))
        assert outcome.status == "error"
        assert "reset" in outcome.message
        assert len(service.calls) == 1

        evaluator.reset_evaluation("fr")
        assert run(orchestrator.evaluate_language("fr")).status == "completed"

    def test_final_response_with_error_status(self, orchestrator, service):
        async def failing_final(*args, **kwargs):
            return EvaluationBatchResult(should_continue=False, status="error")

        service.evaluate = failing_final

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "error"
        assert progress().status == "error"

    def test_watermark_must_advance(self, orchestrator, service):
        async def stuck_service(language_code, source_language="en", start_from_key=None):
            service.calls.append((language_code, start_from_key))
            return EvaluationBatchResult(should_continue=True, last_key=FR_KEYS[0],
                                         total_evaluated=1, total_keys=6)

        service.evaluate = stuck_service

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "error"
        assert "did not advance" in outcome.message
        assert len(service.calls) == 2

    def test_step_guard(self, seeded_db, settings, sleep):
        settings.max_evaluation_steps = 2
        service = FakeEvaluationService(FR_KEYS, batch_size=1)
        orchestrator = EvaluationOrchestrator(service, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "error"
        assert len(service.calls) == 2

    def test_checkpoint_write_failure_aborts_language(self, seeded_db, service, settings, sleep):
        store = FailingStore({"checkpoint_evaluation"})
        orchestrator = EvaluationOrchestrator(service, store=store, settings=settings, sleep=sleep)

        outcome = run(orchestrator.evaluate_language("fr"))

        assert outcome.status == "error"
        assert "persist" in outcome.message
        assert len(service.calls) == 1
        assert progress().status == "error"


# =============================================================================
# Multi-language driver and controls
# =============================================================================

class TestEvaluateLanguages:

    @pytest.fixture
    def service(self):
        return FakeEvaluationService(sorted(set(FRENCH_ROWS) | set(GERMAN_ROWS)), batch_size=3)

    def test_languages_run_in_order(self, orchestrator, service):
        report = run(orchestrator.evaluate_languages())

        assert report.completed == ["fr", "de"]
        assert [call[0] for call in service.calls] == ["fr", "fr", "de", "de"]
        assert report.to_dict()["success"] is True

    def test_completed_and_errored_languages_are_skipped(self, orchestrator, service):
        db.update_progress("fr", status="completed", total_keys=6, evaluated_keys=6)
        db.record_evaluation_error("de", "boom")

        report = run(orchestrator.evaluate_languages())

        assert report.skipped == {"fr": "already completed", "de": "error state, reset required"}
        assert service.calls == []

    def test_reevaluate_all_restarts_from_scratch(self, orchestrator, service):
        db.update_progress("fr", status="completed", total_keys=6, evaluated_keys=6,
                           last_evaluated_key=FR_KEYS[-1])
        db.record_evaluation_error("de", "boom")

        report = run(orchestrator.evaluate_languages(reevaluate_all=True))

        assert report.completed == ["fr", "de"]
        assert service.calls[0] == ("fr", None)
        assert progress("de").error_count == 0

    def test_paused_language_does_not_stop_run(self, orchestrator, service):
        service.failures = {1: QuotaExceededError()}

        report = run(orchestrator.evaluate_languages())

        assert report.paused == ["fr"]
        assert report.completed == ["de"]
        assert "quota" in report.message

    def test_cancel_before_next_language(self, orchestrator, service):
        report = run(orchestrator.evaluate_languages(["fr", "de"], cancel_check=lambda: len(service.calls) >= 2))

        assert report.outcomes[0].status == "completed"
        assert report.cancelled is True
        assert all(call[0] == "fr" for call in service.calls)

    def test_unexpected_exception_is_recorded(self, orchestrator, service):
        async def broken(*args, **kwargs):
            raise RuntimeError("unexpected")

        service.evaluate = broken

        report = run(orchestrator.evaluate_languages(["fr"]))

        assert report.errored == ["fr"]
        assert "RuntimeError" in report.outcomes[0].message


class TestControls:

    def test_pause_only_when_in_progress(self, seeded_db):
        assert evaluator.pause_evaluation("fr") is False
        db.update_progress("fr", status="in_progress")
        assert evaluator.pause_evaluation("fr") is True
        assert progress().status == "paused"

    def test_restart_clears_scores(self, seeded_db):
        db.save_quality_scores("fr", [{"key": "nav.home", "score": 40}])
        db.update_progress("fr", status="completed", evaluated_keys=6, total_keys=6)

        cleared = evaluator.restart_evaluation("fr")

        assert cleared == 6
        assert db.get_translation("fr", "nav.home")["quality_score"] is None
        state = progress()
        assert state.status == "idle"
        assert state.evaluated_keys == 0
