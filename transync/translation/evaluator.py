"""
Resumable quality evaluation.

Drives the external evaluation service one sub-batch at a time for each
language. After every partial response the watermark (last evaluated key)
and counts are persisted before the next sub-batch is requested, so a run
that pauses, times out or crashes continues from exactly where it stopped.

Failure handling:
- rate limited: wait and retry the same sub-batch, pause once retries run out
- quota exceeded: pause (resumable once billing is fixed), surfaced distinctly
- timeout: pause
- any other service failure: error, needs a reset before the next run
- store write failure: abort the language
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from transync.ai.client import EvaluationBatchResult
from transync.ai.exceptions import (
    PersistenceError,
    QuotaExceededError,
    RateLimitError,
    ServiceTimeoutError,
    TranslationError,
)
from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger
from transync.translation.progress import (
    STATUS_COMPLETED,
    STATUS_ERROR,
    STATUS_IN_PROGRESS,
    STATUS_PAUSED,
    EvaluationProgress,
    PipelineProgress,
    check_transition,
)

logger = get_logger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EvaluationOutcome:
    """Where one language's evaluation run ended up."""
    language_code: str
    status: str
    evaluated_keys: int = 0
    total_keys: int = 0
    steps: int = 0
    average_score: Optional[float] = None
    high_quality: int = 0
    medium_quality: int = 0
    low_quality: int = 0
    message: Optional[str] = None
    quota_exceeded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EvaluationRunReport:
    """Outcomes of a multi-language evaluation run."""
    outcomes: List[EvaluationOutcome] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)  # language -> reason
    cancelled: bool = False

    def _codes(self, status: str) -> List[str]:
        return [o.language_code for o in self.outcomes if o.status == status]

    @property
    def completed(self) -> List[str]:
        return self._codes(STATUS_COMPLETED)

    @property
    def paused(self) -> List[str]:
        return self._codes(STATUS_PAUSED)

    @property
    def errored(self) -> List[str]:
        return self._codes(STATUS_ERROR)

    @property
    def success(self) -> bool:
        return not self.errored

    @property
    def message(self) -> str:
        parts = [f"{len(self.completed)} completed"]
        if self.paused:
            parts.append(f"{len(self.paused)} paused")
        if self.errored:
            parts.append(f"{len(self.errored)} failed")
        if self.skipped:
            parts.append(f"{len(self.skipped)} skipped")
        if any(o.quota_exceeded for o in self.outcomes):
            parts.append("service quota exceeded, add credits to resume")
        return ", ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "cancelled": self.cancelled,
            "completed": self.completed,
            "paused": self.paused,
            "errored": self.errored,
            "skipped": self.skipped,
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class EvaluationOrchestrator:
    """
    Per-language resumable evaluation loop.

    Args:
        client: Object with an async ``evaluate(language_code, source_language,
            start_from_key)`` returning an EvaluationBatchResult.
        store: Persistence backend (defaults to the database module).
        settings: Pacing, retry and loop-guard settings.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(self, client, store=None, settings: PipelineSettings = None,
                 sleep: Callable[[float], Awaitable[Any]] = None):
        self.client = client
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()
        self.sleep = sleep or asyncio.sleep

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    def _store_call(self, operation: Callable, *args, **kwargs):
        """Run a store operation, turning store failures into PersistenceError."""
        try:
            return operation(*args, **kwargs)
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to persist evaluation state: {e}") from e

    def load_progress(self, language_code: str) -> EvaluationProgress:
        return EvaluationProgress.from_row(self.store.get_progress(language_code), language_code)

    def _set_status(self, language_code: str, current: str, target: str, **fields) -> str:
        check_transition(current, target)
        self._store_call(self.store.update_progress, language_code, status=target, **fields)
        return target

    def _fail(self, outcome: EvaluationOutcome, message: str) -> EvaluationOutcome:
        """Move the language to error (best effort if the store itself failed)."""
        outcome.status = STATUS_ERROR
        outcome.message = message
        try:
            self.store.record_evaluation_error(outcome.language_code, message)
        except sqlite3.Error as e:
            logger.error(f"{outcome.language_code}: could not record evaluation error: {e}")
        logger.error(f"{outcome.language_code}: evaluation failed: {message}")
        return outcome

    # ------------------------------------------------------------------
    # Single language
    # ------------------------------------------------------------------

    async def _evaluate_step(self, language_code: str, start_key: Optional[str]) -> EvaluationBatchResult:
        """One service call, retrying the same sub-batch while rate limited."""
        attempt = 0
        while True:
            try:
                return await self.client.evaluate(
                    language_code,
                    source_language=self.settings.source_language,
                    start_from_key=start_key,
                )
            except RateLimitError as e:
                if attempt >= self.settings.max_rate_limit_retries:
                    raise
                attempt += 1
                wait_time = e.retry_after or self.settings.rate_limit_backoff_seconds
                logger.warning(
                    f"{language_code}: rate limited, retrying from {start_key!r} in {wait_time}s "
                    f"(attempt {attempt}/{self.settings.max_rate_limit_retries})"
                )
                await self.sleep(wait_time)

    def _stop_requested(self, language_code: str, cancel_check: Optional[Callable[[], bool]]) -> Optional[str]:
        """Return a reason if the loop must not issue another call."""
        row = self._store_call(self.store.get_progress, language_code)
        if row and row.get("status") == STATUS_PAUSED:
            return "paused by request"
        if cancel_check and cancel_check():
            return "cancelled"
        return None

    async def evaluate_language(
        self,
        language_code: str,
        restart: bool = False,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
    ) -> EvaluationOutcome:
        """
        Evaluate one language, resuming from its watermark when possible.

        Args:
            language_code: Language to evaluate.
            restart: Clear the checkpoint first (from any state, including
                error and completed) and evaluate from the first key.
            cancel_check: Returns True to stop before the next sub-batch; the
                language is left paused and resumable.
            progress_callback: Receives a PipelineProgress after each sub-batch.

        Returns:
            EvaluationOutcome. Service failures are reported here, not raised.
        """
        outcome = EvaluationOutcome(language_code=language_code, status=STATUS_IN_PROGRESS)

        try:
            if restart:
                self._store_call(self.store.reset_progress, language_code)
            progress = EvaluationProgress.from_row(
                self._store_call(self.store.ensure_progress, language_code), language_code
            )
        except PersistenceError as e:
            return self._fail(outcome, str(e))

        if progress.status == STATUS_ERROR:
            outcome.status = STATUS_ERROR
            outcome.message = f"Evaluation is in error state ({progress.last_error}); reset before retrying"
            return outcome
        if progress.status == STATUS_COMPLETED:
            outcome.status = STATUS_COMPLETED
            outcome.evaluated_keys = progress.evaluated_keys
            outcome.total_keys = progress.total_keys
            outcome.message = "Already completed"
            return outcome

        try:
            if progress.is_resumable:
                start_key = progress.last_evaluated_key
                total_keys = progress.total_keys
                evaluated = progress.evaluated_keys
                logger.info(f"{language_code}: resuming evaluation after '{start_key}' ({evaluated}/{total_keys})")
                status = self._set_status(language_code, progress.status, STATUS_IN_PROGRESS)
            else:
                start_key = None
                total_keys = self._store_call(self.store.count_translations, language_code)
                evaluated = 0
                logger.info(f"{language_code}: starting evaluation of {total_keys} keys")
                status = self._set_status(
                    language_code, progress.status, STATUS_IN_PROGRESS,
                    total_keys=total_keys, evaluated_keys=0, last_evaluated_key=None,
                    started_at=_now(), completed_at=None, last_error=None, error_message=None,
                )
        except PersistenceError as e:
            return self._fail(outcome, str(e))

        outcome.total_keys = total_keys
        outcome.evaluated_keys = evaluated

        while True:
            try:
                reason = self._stop_requested(language_code, cancel_check)
            except PersistenceError as e:
                return self._fail(outcome, str(e))
            if reason:
                if reason == "cancelled":
                    try:
                        self._set_status(language_code, status, STATUS_PAUSED)
                    except PersistenceError as e:
                        return self._fail(outcome, str(e))
                outcome.status = STATUS_PAUSED
                outcome.message = f"Evaluation {reason} after '{start_key}'" if start_key else f"Evaluation {reason}"
                logger.info(f"{language_code}: {outcome.message}")
                return outcome

            if outcome.steps >= self.settings.max_evaluation_steps:
                return self._fail(outcome, f"Exceeded {self.settings.max_evaluation_steps} evaluation steps")

            try:
                result = await self._evaluate_step(language_code, start_key)
            except (RateLimitError, QuotaExceededError, ServiceTimeoutError) as e:
                outcome.status = STATUS_PAUSED
                outcome.message = str(e)
                outcome.quota_exceeded = isinstance(e, QuotaExceededError)
                try:
                    self._set_status(language_code, status, STATUS_PAUSED,
                                     last_error=str(e), error_message=str(e))
                except PersistenceError as pe:
                    return self._fail(outcome, str(pe))
                logger.warning(f"{language_code}: evaluation paused at '{start_key}': {e}")
                return outcome
            except TranslationError as e:
                return self._fail(outcome, str(e))

            outcome.steps += 1

            try:
                if result.scores:
                    self._store_call(self.store.save_quality_scores, language_code, result.scores)

                if result.is_final:
                    if result.failed:
                        return self._fail(outcome, f"Evaluation service finished with status '{result.status}'")
                    final_total = result.total_keys or total_keys
                    self._set_status(
                        language_code, status, STATUS_COMPLETED,
                        total_keys=final_total, evaluated_keys=final_total,
                        completed_at=_now(), last_error=None, error_message=None,
                    )
                    outcome.status = STATUS_COMPLETED
                    outcome.total_keys = outcome.evaluated_keys = final_total
                    outcome.average_score = result.average_score
                    outcome.high_quality = result.high_quality
                    outcome.medium_quality = result.medium_quality
                    outcome.low_quality = result.low_quality
                    outcome.message = f"Evaluated {final_total} keys"
                    logger.info(
                        f"{language_code}: evaluation completed ({final_total} keys, "
                        f"average {result.average_score}, high={result.high_quality}, "
                        f"medium={result.medium_quality}, low={result.low_quality})"
                    )
                    return outcome

                if start_key is not None and result.last_key <= start_key:
                    return self._fail(
                        outcome, f"Evaluation did not advance past '{start_key}' (got '{result.last_key}')"
                    )

                total_keys = result.total_keys or total_keys
                self._store_call(self.store.checkpoint_evaluation, language_code,
                              result.total_evaluated, result.last_key, total_keys)
            except PersistenceError as e:
                return self._fail(outcome, str(e))

            start_key = result.last_key
            outcome.total_keys = total_keys
            outcome.evaluated_keys = min(result.total_evaluated, total_keys) if total_keys else result.total_evaluated
            logger.debug(f"{language_code}: checkpoint {outcome.evaluated_keys}/{total_keys} at '{start_key}'")

            if progress_callback:
                progress_callback(PipelineProgress(
                    current_language=language_code,
                    total_languages=1,
                    completed_languages=0,
                    processed=outcome.evaluated_keys,
                    total=total_keys,
                ))

            await self.sleep(self.settings.evaluation_step_delay_seconds)

    # ------------------------------------------------------------------
    # Multi-language driver
    # ------------------------------------------------------------------

    def _target_languages(self, language_codes: Optional[Sequence[str]]) -> List[str]:
        enabled = [lang["code"] for lang in self.store.get_languages(enabled_only=True)
                   if lang["code"] != self.settings.source_language]
        if language_codes is None:
            return enabled
        return [code for code in language_codes if code in enabled]

    async def evaluate_languages(
        self,
        language_codes: Optional[Sequence[str]] = None,
        reevaluate_all: bool = False,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
    ) -> EvaluationRunReport:
        """
        Evaluate languages one at a time, in listed order.

        Completed languages and languages in error are skipped unless
        reevaluate_all is set, in which case their checkpoint is cleared and
        they start over. A language that pauses or fails does not stop the run.
        """
        report = EvaluationRunReport()
        codes = self._target_languages(language_codes)
        logger.info(f"Evaluating {len(codes)} languages (reevaluate_all={reevaluate_all})")

        ran_any = False
        for index, code in enumerate(codes):
            if cancel_check and cancel_check():
                report.cancelled = True
                logger.info("Evaluation run cancelled")
                break

            progress = self.load_progress(code)
            if progress.status == STATUS_ERROR and not reevaluate_all:
                report.skipped[code] = "error state, reset required"
                continue
            if progress.status == STATUS_COMPLETED and not reevaluate_all:
                report.skipped[code] = "already completed"
                continue

            if ran_any:
                await self.sleep(self.settings.language_delay_seconds)
            ran_any = True

            def on_progress(p: PipelineProgress, _index=index):
                if progress_callback:
                    p.total_languages = len(codes)
                    p.completed_languages = _index
                    progress_callback(p)

            try:
                outcome = await self.evaluate_language(
                    code,
                    restart=progress.status in (STATUS_COMPLETED, STATUS_ERROR),
                    cancel_check=cancel_check,
                    progress_callback=on_progress,
                )
            except Exception as e:
                logger.exception(f"{code}: unexpected evaluation failure")
                outcome = self._fail(EvaluationOutcome(language_code=code, status=STATUS_ERROR),
                                     f"{type(e).__name__}: {e}")
            report.outcomes.append(outcome)

        logger.info(f"Evaluation run finished: {report.message}")
        return report


def pause_evaluation(language_code: str, store=None) -> bool:
    """
    Ask a running evaluation to stop before its next sub-batch.

    Returns:
        True if the language was in progress and is now paused.
    """
    store = store or db
    row = store.get_progress(language_code)
    if not row or row.get("status") != STATUS_IN_PROGRESS:
        return False
    store.update_progress(language_code, status=STATUS_PAUSED)
    logger.info(f"{language_code}: evaluation pause requested")
    return True


def reset_evaluation(language_code: str, store=None) -> None:
    """Operator reset: back to idle with the checkpoint cleared (error -> idle)."""
    store = store or db
    store.reset_progress(language_code)
    logger.info(f"{language_code}: evaluation progress reset")


def restart_evaluation(language_code: str, store=None) -> int:
    """
    Reset the checkpoint and drop the language's quality scores so the next
    run starts from a clean slate.

    Returns:
        Number of rows whose scores were cleared.
    """
    store = store or db
    store.reset_progress(language_code)
    cleared = store.clear_quality_scores(language_code)
    logger.info(f"{language_code}: evaluation restarted, {cleared} quality scores cleared")
    return cleared
