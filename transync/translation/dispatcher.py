"""
Bulk translation dispatch.

Two modes against the external translation services:

- fill missing: one request per language carrying every untranslated key
  (text missing, blank, or still the placeholder); the service reports
  translated/failed counts.
- bulk refine: rows selected by a RefineFilter are refined in small
  concurrent batches with a pause between batches. Each refined text is
  written back unapproved, since changed text needs a fresh human review.

A 429 waits and retries; a 402 stops the current language and every
remaining language of the run; any other failure is counted and the run
moves on.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field, asdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from transync.ai.client import RefineRequest
from transync.ai.exceptions import (
    PersistenceError,
    QuotaExceededError,
    RateLimitError,
    TranslationError,
)
from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger
from transync.translation.progress import PipelineProgress

logger = get_logger(__name__)

QUOTA_MESSAGE = "Translation service quota exceeded. Add credits, then rerun the remaining languages."


def is_untranslated(key: str, text: Optional[str]) -> bool:
    """Missing, blank, or still the placeholder sentinel (text equal to its key)."""
    return text is None or not text.strip() or text == key


@dataclass
class RefineFilter:
    """Which rows of a language to refine. Unset fields do not filter."""
    review_status: Optional[str] = None
    max_quality_score: Optional[float] = None
    unapproved_only: bool = False
    page_location: Optional[str] = None
    keys: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RefineFilter":
        data = data or {}
        keys = data.get("keys")
        max_score = data.get("max_quality_score")
        return cls(
            review_status=data.get("review_status"),
            max_quality_score=float(max_score) if max_score is not None else None,
            unapproved_only=bool(data.get("unapproved_only", False)),
            page_location=data.get("page_location"),
            keys=list(keys) if keys is not None else None,
        )

    def matches(self, row: Dict[str, Any]) -> bool:
        if self.keys is not None and row["translation_key"] not in self.keys:
            return False
        if self.review_status and row.get("review_status") != self.review_status:
            return False
        if self.unapproved_only and row.get("approved"):
            return False
        if self.page_location and row.get("page_location") != self.page_location:
            return False
        if self.max_quality_score is not None:
            score = row.get("quality_score")
            if score is None or score > self.max_quality_score:
                return False
        return True


@dataclass
class LanguageFillResult:
    language_code: str
    requested: int = 0
    translated: int = 0
    failed: int = 0
    error: Optional[str] = None


@dataclass
class FillReport:
    results: List[LanguageFillResult] = field(default_factory=list)
    quota_exceeded: bool = False
    aborted_languages: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_translated(self) -> int:
        return sum(r.translated for r in self.results)

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def message(self) -> str:
        message = f"{self.total_translated} translated, {self.total_failed} failed"
        if self.quota_exceeded:
            message += f". {QUOTA_MESSAGE}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.quota_exceeded,
            "message": self.message,
            "total_translated": self.total_translated,
            "total_failed": self.total_failed,
            "quota_exceeded": self.quota_exceeded,
            "aborted_languages": self.aborted_languages,
            "cancelled": self.cancelled,
            "languages": [asdict(r) for r in self.results],
        }


@dataclass
class LanguageRefineResult:
    language_code: str
    selected: int = 0
    refined: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[str] = None
    quota_exceeded: bool = False
    cancelled: bool = False


@dataclass
class RefineReport:
    results: List[LanguageRefineResult] = field(default_factory=list)
    aborted_languages: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def quota_exceeded(self) -> bool:
        return any(r.quota_exceeded for r in self.results)

    @property
    def total_refined(self) -> int:
        return sum(r.refined for r in self.results)

    @property
    def total_failed(self) -> int:
        return sum(r.failed for r in self.results)

    @property
    def message(self) -> str:
        message = f"{self.total_refined} refined, {self.total_failed} failed"
        if self.quota_exceeded:
            message += f". {QUOTA_MESSAGE}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": not self.quota_exceeded,
            "message": self.message,
            "total_refined": self.total_refined,
            "total_failed": self.total_failed,
            "quota_exceeded": self.quota_exceeded,
            "aborted_languages": self.aborted_languages,
            "cancelled": self.cancelled,
            "languages": [asdict(r) for r in self.results],
        }


class TranslationBatchDispatcher:
    """
    Drives the fill and refine services.

    Args:
        client: Object with async ``translate_keys(keys, target_language,
            source_language)`` and ``refine(RefineRequest)``.
        store: Persistence backend (defaults to the database module).
        settings: Batch size, pacing and retry settings.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(self, client, store=None, settings: PipelineSettings = None,
                 sleep: Callable[[float], Awaitable[Any]] = None):
        self.client = client
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()
        self.sleep = sleep or asyncio.sleep

    def _target_languages(self, language_codes: Optional[Sequence[str]]) -> List[str]:
        enabled = [lang["code"] for lang in self.store.get_languages(enabled_only=True)
                   if lang["code"] != self.settings.source_language]
        if language_codes is None:
            return enabled
        return [code for code in language_codes if code in enabled]

    async def _with_backoff(self, label: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Await call(), waiting out rate limits up to max_rate_limit_retries times."""
        attempt = 0
        while True:
            try:
                return await call()
            except RateLimitError as e:
                if attempt >= self.settings.max_rate_limit_retries:
                    raise
                attempt += 1
                wait_time = e.retry_after or self.settings.rate_limit_backoff_seconds
                logger.warning(f"{label}: rate limited, waiting {wait_time}s before retry {attempt}")
                await self.sleep(wait_time)

    # ------------------------------------------------------------------
    # Fill missing
    # ------------------------------------------------------------------

    async def fill_missing(
        self,
        language_codes: Optional[Sequence[str]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
    ) -> FillReport:
        """Request translation of every untranslated key, one call per language."""
        report = FillReport()
        codes = self._target_languages(language_codes)

        for index, code in enumerate(codes):
            if report.quota_exceeded:
                report.aborted_languages.append(code)
                continue
            if cancel_check and cancel_check():
                report.cancelled = True
                break

            result = LanguageFillResult(language_code=code)
            report.results.append(result)
            try:
                keys = self.store.get_untranslated_keys(code)
            except sqlite3.Error as e:
                result.error = f"Failed to read untranslated keys: {e}"
                logger.error(f"{code}: {result.error}")
                continue

            result.requested = len(keys)
            if not keys:
                logger.info(f"{code}: nothing to translate")
                continue

            logger.info(f"{code}: requesting translation of {len(keys)} keys")
            try:
                response = await self._with_backoff(
                    code,
                    lambda: self.client.translate_keys(keys, code, self.settings.source_language),
                )
                result.translated = response.translated
                result.failed = response.failed
                logger.info(f"{code}: {response.translated} translated, {response.failed} failed")
            except QuotaExceededError as e:
                report.quota_exceeded = True
                result.failed = len(keys)
                result.error = str(e)
                logger.error(f"{code}: quota exceeded, aborting remaining languages: {e}")
            except TranslationError as e:
                result.failed = len(keys)
                result.error = str(e)
                logger.error(f"{code}: translation failed: {e}")

            if progress_callback:
                progress_callback(PipelineProgress(
                    current_language=code,
                    total_languages=len(codes),
                    completed_languages=index + 1,
                    processed=result.translated + result.failed,
                    total=result.requested,
                    success_count=report.total_translated,
                    failure_count=report.total_failed,
                ))

            if index < len(codes) - 1 and not report.quota_exceeded:
                await self.sleep(self.settings.language_delay_seconds)

        logger.info(f"Fill run finished: {report.message}")
        return report

    # ------------------------------------------------------------------
    # Bulk refine
    # ------------------------------------------------------------------

    async def _refine_one(self, language_code: str, language_name: str,
                          row: Dict[str, Any], source_row: Dict[str, Any]) -> str:
        key = row["translation_key"]
        request = RefineRequest(
            english_text=source_row["translated_text"],
            current_translation=row["translated_text"],
            target_language=language_code,
            target_language_name=language_name,
            context=row.get("context") or source_row.get("context"),
            page_location=row.get("page_location") or source_row.get("page_location"),
            tov_content=self.settings.tov_content,
        )
        refined = await self._with_backoff(f"{language_code}:{key}", lambda: self.client.refine(request))
        try:
            self.store.update_translated_text(language_code, key, refined)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to save refined text for '{key}': {e}") from e
        return refined

    def _select_rows(self, language_code: str, refine_filter: RefineFilter,
                     result: LanguageRefineResult):
        source_rows = {row["translation_key"]: row
                       for row in self.store.get_translations(self.settings.source_language)}
        selected = []
        for row in self.store.get_translations(language_code):
            if not refine_filter.matches(row):
                continue
            result.selected += 1
            source_row = source_rows.get(row["translation_key"])
            if (is_untranslated(row["translation_key"], row.get("translated_text"))
                    or not source_row or not (source_row.get("translated_text") or "").strip()):
                result.skipped += 1
                continue
            selected.append((row, source_row))
        return selected

    async def refine_language(
        self,
        language_code: str,
        refine_filter: RefineFilter = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
    ) -> LanguageRefineResult:
        """
        Refine the filtered rows of one language in concurrent batches.

        Rows that are still placeholders or empty, or whose source text is
        missing, are counted as skipped rather than sent.
        """
        refine_filter = refine_filter or RefineFilter()
        result = LanguageRefineResult(language_code=language_code)

        try:
            language = self.store.get_language(language_code)
            work = self._select_rows(language_code, refine_filter, result)
        except sqlite3.Error as e:
            result.error = f"Failed to load rows: {e}"
            logger.error(f"{language_code}: {result.error}")
            return result
        language_name = (language or {}).get("name") or language_code

        batch_size = max(1, self.settings.refine_batch_size)
        batches = [work[i:i + batch_size] for i in range(0, len(work), batch_size)]
        logger.info(
            f"{language_code}: refining {len(work)} rows in {len(batches)} batches "
            f"({result.skipped} skipped)"
        )

        for batch_index, batch in enumerate(batches):
            if cancel_check and cancel_check():
                result.cancelled = True
                break

            outcomes = await asyncio.gather(
                *(self._refine_one(language_code, language_name, row, source_row)
                  for row, source_row in batch),
                return_exceptions=True,
            )

            stop = False
            for (row, _), outcome in zip(batch, outcomes):
                key = row["translation_key"]
                if not isinstance(outcome, BaseException):
                    result.refined += 1
                    continue
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failed += 1
                if isinstance(outcome, QuotaExceededError):
                    result.quota_exceeded = True
                    result.error = str(outcome)
                    stop = True
                elif isinstance(outcome, PersistenceError):
                    result.error = str(outcome)
                    stop = True
                else:
                    logger.warning(f"{language_code}: refine failed for '{key}': {outcome}")

            if progress_callback:
                progress_callback(PipelineProgress(
                    current_language=language_code,
                    total_languages=1,
                    completed_languages=0,
                    processed=result.refined + result.failed,
                    total=len(work),
                    success_count=result.refined,
                    failure_count=result.failed,
                    current_batch=batch_index + 1,
                    total_batches=len(batches),
                ))

            if stop:
                logger.error(f"{language_code}: refine aborted: {result.error}")
                break
            if batch_index < len(batches) - 1:
                await self.sleep(self.settings.batch_delay_seconds)

        logger.info(
            f"{language_code}: refine finished ({result.refined} refined, "
            f"{result.failed} failed, {result.skipped} skipped)"
        )
        return result

    async def refine_languages(
        self,
        language_codes: Optional[Sequence[str]] = None,
        refine_filter: RefineFilter = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
    ) -> RefineReport:
        """Refine several languages one after another; a quota error aborts the rest."""
        report = RefineReport()
        codes = self._target_languages(language_codes)

        for index, code in enumerate(codes):
            if report.quota_exceeded:
                report.aborted_languages.append(code)
                continue
            if cancel_check and cancel_check():
                report.cancelled = True
                break
            if index > 0:
                await self.sleep(self.settings.language_delay_seconds)

            def on_progress(p: PipelineProgress, _index=index):
                if progress_callback:
                    p.total_languages = len(codes)
                    p.completed_languages = _index
                    progress_callback(p)

            result = await self.refine_language(code, refine_filter, cancel_check, on_progress)
            report.results.append(result)
            if result.cancelled:
                report.cancelled = True
                break

        logger.info(f"Refine run finished: {report.message}")
        return report
