"""
Tests for bulk fill and batched refinement.

Test Coverage:
- Untranslated key selection (missing, blank, placeholder)
- Fill: one call per language, quota abort, failure isolation
- Refine: batches of five, bounded concurrency, pacing between batches
- Refine write-back resets approval
- Skipped rows, filters, 429 retry and 402 abort
"""

import pytest

import transync.core.database as db
from transync.ai.exceptions import QuotaExceededError, RateLimitError, ServiceError
from transync.translation.dispatcher import RefineFilter, TranslationBatchDispatcher, is_untranslated

from conftest import FailingStore, FakeTranslationService, run, set_scores


@pytest.fixture
def service():
    return FakeTranslationService()


@pytest.fixture
def dispatcher(seeded_db, service, settings, sleep):
    return TranslationBatchDispatcher(service, settings=settings, sleep=sleep)


def test_is_untranslated():
    assert is_untranslated("a.b", None)
    assert is_untranslated("a.b", "   ")
    assert is_untranslated("a.b", "a.b")
    assert not is_untranslated("a.b", "Bonjour")


# =============================================================================
# Fill missing
# =============================================================================

class TestFillMissing:

    def test_requests_only_untranslated_keys(self, dispatcher, service):
        db.insert_placeholders("de", [("pricing.title", "pricing", None)])

        report = run(dispatcher.fill_missing())

        assert service.fill_calls == [("de", ["cta.signup", "footer.copyright", "pricing.title"])]
        assert report.total_translated == 3
        assert db.get_translation("de", "cta.signup")["translated_text"] == "[de] cta.signup"

    def test_language_without_work_is_not_sent(self, dispatcher, service):
        report = run(dispatcher.fill_missing(["fr"]))

        assert service.fill_calls == []
        assert report.results[0].requested == 0

    def test_quota_aborts_remaining_languages(self, seeded_db, settings, sleep):
        db.upsert_translation("fr", "nav.home", "")
        db.upsert_language("es", "Spanish", sort_order=3)
        db.upsert_translation("es", "nav.home", "nav.home")
        service = FakeTranslationService(fill_failures={"fr": QuotaExceededError()})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        report = run(dispatcher.fill_missing())

        assert report.quota_exceeded is True
        assert report.aborted_languages == ["de", "es"]
        assert [call[0] for call in service.fill_calls] == ["fr"]
        payload = report.to_dict()
        assert payload["success"] is False
        assert "quota exceeded" in payload["message"]

    def test_other_failures_are_counted_and_run_continues(self, seeded_db, settings, sleep):
        db.upsert_translation("fr", "nav.home", "")
        service = FakeTranslationService(fill_failures={"fr": ServiceError("bad gateway", status_code=502)})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        report = run(dispatcher.fill_missing())

        by_lang = {r.language_code: r for r in report.results}
        assert by_lang["fr"].failed == 1
        assert by_lang["fr"].error == "bad gateway"
        assert by_lang["de"].translated == 2
        assert report.to_dict()["success"] is True

    def test_rate_limit_is_retried(self, seeded_db, settings, sleep):
        calls = []
        service = FakeTranslationService()
        original = service.translate_keys

        async def limited(keys, target_language, source_language="en"):
            calls.append(target_language)
            if len(calls) == 1:
                raise RateLimitError(retry_after=3)
            return await original(keys, target_language, source_language)

        service.translate_keys = limited
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        report = run(dispatcher.fill_missing(["de"]))

        assert calls == ["de", "de"]
        assert sleep.delays == [3]
        assert report.total_translated == 2


# =============================================================================
# Refine
# =============================================================================

class TestRefineLanguage:

    def test_batches_of_five_with_bounded_concurrency(self, dispatcher, service, sleep):
        updates = []

        result = run(dispatcher.refine_language("fr", progress_callback=updates.append))

        assert result.refined == 6
        assert service.max_in_flight == 5
        assert [(p.current_batch, p.total_batches, p.processed) for p in updates] == [(1, 2, 5), (2, 2, 6)]
        assert sleep.delays == [0]

    def test_refined_text_written_back_unapproved(self, dispatcher):
        db.approve_translations("fr")

        run(dispatcher.refine_language("fr"))

        row = db.get_translation("fr", "nav.home")
        assert row["translated_text"] == "Accueil (refined)"
        assert row["approved"] is False
        assert row["approved_at"] is None

    def test_request_carries_source_and_context(self, dispatcher, service):
        run(dispatcher.refine_language("fr", RefineFilter(keys=["cta.signup"])))

        request = service.refine_calls[0]
        assert request.english_text == "Sign up"
        assert request.current_translation == "S'inscrire"
        assert request.target_language_name == "French"
        assert request.context == "Call to action button"
        assert request.to_payload()["englishText"] == "Sign up"

    def test_placeholders_and_empty_rows_are_skipped(self, dispatcher, service):
        result = run(dispatcher.refine_language("de"))

        assert result.selected == 4
        assert result.skipped == 2
        assert result.refined == 2
        assert {r.current_translation for r in service.refine_calls} == {"Startseite", "Über uns"}

    def test_filter_by_score_and_review_status(self, dispatcher, service):
        set_scores("fr", {"nav.home": 60, "nav.about": 95, "cta.signup": 70})
        db.set_review_status(["fr"], ["cta.signup"], "needs_review")

        result = run(dispatcher.refine_language("fr", RefineFilter(max_quality_score=70)))
        assert result.refined == 2

        service.refine_calls.clear()
        run(dispatcher.refine_language("fr", RefineFilter(review_status="needs_review")))
        assert [r.english_text for r in service.refine_calls] == ["Sign up"]

    def test_item_rate_limit_retried(self, seeded_db, settings, sleep):
        service = FakeTranslationService(refine_failures={2: RateLimitError(retry_after=7)})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        result = run(dispatcher.refine_language("fr"))

        assert result.refined == 6
        assert result.failed == 0
        assert 7 in sleep.delays

    def test_item_failure_does_not_stop_batch(self, seeded_db, settings, sleep):
        service = FakeTranslationService(refine_failures={3: ServiceError("empty text")})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        result = run(dispatcher.refine_language("fr"))

        assert result.refined == 5
        assert result.failed == 1
        assert len(service.refine_calls) == 6

    def test_quota_stops_language(self, seeded_db, settings, sleep):
        service = FakeTranslationService(refine_failures={1: QuotaExceededError()})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        result = run(dispatcher.refine_language("fr"))

        assert result.quota_exceeded is True
        assert len(service.refine_calls) == 5
        assert result.refined == 4

    def test_write_back_failure_stops_language(self, seeded_db, service, settings, sleep):
        store = FailingStore({"update_translated_text"})
        dispatcher = TranslationBatchDispatcher(service, store=store, settings=settings, sleep=sleep)

        result = run(dispatcher.refine_language("fr"))

        assert result.failed == 5
        assert "Failed to save refined text" in result.error
        assert len(service.refine_calls) == 5

    def test_cancel_between_batches(self, dispatcher, service):
        result = run(dispatcher.refine_language("fr", cancel_check=lambda: len(service.refine_calls) >= 5))

        assert result.cancelled is True
        assert result.refined == 5


class TestRefineLanguages:

    def test_quota_aborts_remaining_languages(self, seeded_db, settings, sleep):
        service = FakeTranslationService(refine_failures={1: QuotaExceededError()})
        dispatcher = TranslationBatchDispatcher(service, settings=settings, sleep=sleep)

        report = run(dispatcher.refine_languages())

        assert report.quota_exceeded is True
        assert report.aborted_languages == ["de"]
        assert all(r.target_language == "fr" for r in service.refine_calls)
        assert report.to_dict()["success"] is False

    def test_runs_languages_sequentially(self, dispatcher, service):
        report = run(dispatcher.refine_languages())

        assert report.total_refined == 8
        languages = [r.target_language for r in service.refine_calls]
        assert languages == ["fr"] * 6 + ["de"] * 2

    def test_filter_from_request_payload(self):
        refine_filter = RefineFilter.from_dict({"max_quality_score": "80", "unapproved_only": True})
        assert refine_filter.max_quality_score == 80.0
        assert refine_filter.matches({"translation_key": "k", "approved": False, "quality_score": 75})
        assert not refine_filter.matches({"translation_key": "k", "approved": True, "quality_score": 75})
        assert not refine_filter.matches({"translation_key": "k", "approved": False, "quality_score": None})
