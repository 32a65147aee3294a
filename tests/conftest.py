"""Pytest configuration and shared fixtures for transync tests."""

import asyncio
import sqlite3

import pytest

import transync.core.database as db
from transync.ai.client import EvaluationBatchResult, FillResponse
from transync.config import PipelineSettings
from transync.core.schema import initialize_database

ENGLISH_ROWS = {
    "cta.signup": ("Sign up", "home", "Call to action button"),
    "footer.copyright": ("All rights reserved", "layout", None),
    "nav.about": ("About", "layout", "Navigation link"),
    "nav.home": ("Home", "layout", "Navigation link"),
    "pricing.subtitle": ("Simple plans for everyone", "pricing", None),
    "pricing.title": ("Pricing", "pricing", None),
}

FRENCH_ROWS = {
    "cta.signup": "S'inscrire",
    "footer.copyright": "Tous droits réservés",
    "nav.about": "À propos",
    "nav.home": "Accueil",
    "pricing.subtitle": "Des offres simples pour tous",
    "pricing.title": "Tarifs",
}

# German is behind: two real translations, a placeholder, an empty row and
# two master keys missing entirely.
GERMAN_ROWS = {
    "cta.signup": "cta.signup",
    "footer.copyright": "",
    "nav.about": "Über uns",
    "nav.home": "Startseite",
}


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Point the database module at a fresh SQLite file."""
    monkeypatch.setattr(db, "DB_FILE", tmp_path / "translations.db")
    initialize_database()
    return db.DB_FILE


@pytest.fixture
def seeded_db(temp_db):
    """Languages en/fr/de with the rows above. English is approved."""
    db.upsert_language("en", "English", show_in_switcher=True, sort_order=0)
    db.upsert_language("fr", "French", "Français", sort_order=1)
    db.upsert_language("de", "German", "Deutsch", sort_order=2)

    for key, (text, page, context) in ENGLISH_ROWS.items():
        db.upsert_translation("en", key, text, page_location=page, context=context, approved=True)
    for key, text in FRENCH_ROWS.items():
        db.upsert_translation("fr", key, text, page_location=ENGLISH_ROWS[key][1])
    for key, text in GERMAN_ROWS.items():
        db.upsert_translation("de", key, text, page_location=ENGLISH_ROWS[key][1])
    return temp_db


def set_scores(language_code, scores):
    """Write quality scores straight into the table ({key: score})."""
    db.save_quality_scores(language_code, [{"key": k, "score": v} for k, v in scores.items()])


# =============================================================================
# Settings and pacing
# =============================================================================

@pytest.fixture
def settings():
    """Pipeline settings without any waiting."""
    return PipelineSettings(
        batch_delay_seconds=0,
        rate_limit_backoff_seconds=0,
        evaluation_step_delay_seconds=0,
        language_delay_seconds=0,
    )


class SleepRecorder:
    """Async stand-in for asyncio.sleep that only records the delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def sleep():
    return SleepRecorder()


# =============================================================================
# Fake external services
# =============================================================================

class FakeEvaluationService:
    """
    Walks the sorted key set of a language in sub-batches, the way the real
    evaluation service pages through keys after startFromKey.

    ``failures`` maps a 1-based call number to the exception that call raises.
    """

    def __init__(self, keys, batch_size=2, score=90, failures=None):
        self.keys = sorted(keys)
        self.batch_size = batch_size
        self.score = score
        self.failures = dict(failures or {})
        self.calls = []
        self.evaluated = []

    async def evaluate(self, language_code, source_language="en", start_from_key=None):
        self.calls.append((language_code, start_from_key))
        failure = self.failures.pop(len(self.calls), None)
        if failure is not None:
            raise failure

        remaining = [k for k in self.keys if start_from_key is None or k > start_from_key]
        batch = remaining[:self.batch_size]
        self.evaluated.extend(batch)
        done = len(self.keys) - len(remaining) + len(batch)
        scores = [{"key": k, "score": self.score, "metrics": {"accuracy": self.score}} for k in batch]

        if len(batch) == len(remaining):
            return EvaluationBatchResult(
                should_continue=False,
                total_evaluated=done,
                total_keys=len(self.keys),
                status="completed",
                average_score=float(self.score),
                high_quality=len(self.keys) if self.score >= 85 else 0,
                scores=scores,
            )
        return EvaluationBatchResult(
            should_continue=True,
            last_key=batch[-1],
            total_evaluated=done,
            total_keys=len(self.keys),
            scores=scores,
        )


class FakeTranslationService:
    """
    In-memory fill and refine services.

    The fill service writes the rows itself, like the real one. ``fill_failures``
    maps a language code to an exception; ``refine_failures`` maps a 1-based
    refine call number to an exception.
    """

    def __init__(self, fill_failures=None, refine_failures=None):
        self.fill_failures = dict(fill_failures or {})
        self.refine_failures = dict(refine_failures or {})
        self.fill_calls = []
        self.refine_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def translate_keys(self, keys, target_language, source_language="en"):
        self.fill_calls.append((target_language, list(keys)))
        failure = self.fill_failures.get(target_language)
        if failure is not None:
            raise failure
        for key in keys:
            db.update_translated_text(target_language, key, f"[{target_language}] {key}")
        return FillResponse(translated=len(keys), failed=0, count=len(keys))

    async def refine(self, request):
        self.refine_calls.append(request)
        call_number = len(self.refine_calls)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            failure = self.refine_failures.pop(call_number, None)
            if failure is not None:
                raise failure
            return f"{request.current_translation} (refined)"
        finally:
            self.in_flight -= 1


class FakeServiceClient(FakeTranslationService):
    """Fill, refine and evaluation fakes behind the ServiceClient interface."""

    def __init__(self, fill_failures=None):
        super().__init__(fill_failures=fill_failures)
        self.evaluation = FakeEvaluationService(sorted(FRENCH_ROWS), batch_size=3)

    async def evaluate(self, *args, **kwargs):
        return await self.evaluation.evaluate(*args, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None


class FailingStore:
    """Delegates to the database module, raising sqlite3 errors for chosen calls."""

    def __init__(self, fail_on, language_code=None):
        self.fail_on = set(fail_on)
        self.language_code = language_code

    def __getattr__(self, name):
        operation = getattr(db, name)
        if name not in self.fail_on:
            return operation

        def failing(*args, **kwargs):
            if self.language_code is None or (args and args[0] == self.language_code):
                raise sqlite3.OperationalError("database is locked")
            return operation(*args, **kwargs)

        return failing


def run(coro):
    """Drive a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)
