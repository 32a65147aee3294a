"""
Asynchronous task helpers for long-running background jobs (fill, refine, evaluate,
full pipeline).

Each job runs in a daemon thread that drives its coroutine with
asyncio.run. Evaluate and pipeline jobs hold a per-language guard so two runs never
write the same language's checkpoint at once within this process.
"""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional

from transync.ai.client import ServiceClient
from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger
from transync.translation.dispatcher import RefineFilter, TranslationBatchDispatcher
from transync.translation.evaluator import EvaluationOrchestrator
from transync.translation.pipeline import PipelineRunner
from transync.translation.progress import PipelineProgress

logger = get_logger(__name__)

JOB_KINDS = ("fill", "refine", "evaluate", "pipeline")
GUARDED_KINDS = ("evaluate", "pipeline")

# Factory for the service client used by workers; replaced in tests
client_factory: Callable[[], Any] = ServiceClient


class JobConflictError(Exception):
    """Another active job already owns one of the requested languages."""

    def __init__(self, message: str, languages: List[str]):
        super().__init__(message)
        self.languages = languages


@dataclass
class JobState:
    """In-memory representation of an asynchronous job."""

    job_id: str
    kind: str  # fill|refine|evaluate|pipeline
    languages: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    cancel_requested: bool = False
    state: str = "pending"  # pending|running|completed|failed|cancelled
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    progress: Dict[str, Any] = field(default_factory=dict)
    progress_history: List[Dict[str, Any]] = field(default_factory=list)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    last_update: float = field(default_factory=time.time)

    def request_cancel(self):
        """Mark this job as requested for cancellation."""
        self.cancel_requested = True
        self.last_update = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_jobs: Dict[str, JobState] = {}
_jobs_lock = threading.Lock()
_active_languages: Dict[str, str] = {}  # language_code -> evaluation job_id
_JOB_RETENTION_SECONDS = 600  # Retain job info for 10 minutes after completion


def _resolve_languages(languages: Optional[List[str]]) -> List[str]:
    source = PipelineSettings.from_config().source_language
    enabled = [lang["code"] for lang in db.get_languages(enabled_only=True) if lang["code"] != source]
    if not languages:
        return enabled
    return [code for code in languages if code in enabled]


def create_job(kind: str, languages: Optional[List[str]] = None,
               options: Optional[Dict[str, Any]] = None) -> JobState:
    """
    Create and launch a background job.

    Args:
        kind: "fill", "refine", "evaluate" or "pipeline".
        languages: Language codes to process. None or empty means every
            enabled target language.
        options: Kind-specific options ("filter" for refine,
            "reevaluate_all" for evaluate and pipeline).

    Returns:
        JobState for the new job (already registered and running in background).

    Raises:
        ValueError: Unknown job kind.
        JobConflictError: An evaluation job is already running for one of the languages.
    """
    if kind not in JOB_KINDS:
        raise ValueError(f"Unknown job kind: {kind}")

    job_state = JobState(
        job_id=uuid.uuid4().hex,
        kind=kind,
        languages=_resolve_languages(languages),
        options=dict(options or {}),
    )

    with _jobs_lock:
        _cleanup_jobs_locked()
        if kind in GUARDED_KINDS:
            busy = sorted(code for code in job_state.languages if code in _active_languages)
            if busy:
                raise JobConflictError(f"Evaluation already running for: {', '.join(busy)}", busy)
            for code in job_state.languages:
                _active_languages[code] = job_state.job_id
        _jobs[job_state.job_id] = job_state

    thread = threading.Thread(
        target=_run_job,
        args=(job_state,),
        name=f"{kind}-job-{job_state.job_id}",
        daemon=True,
    )
    thread.start()
    logger.info(
        "%s job %s started (languages=%s, options=%s)",
        kind.capitalize(),
        job_state.job_id,
        job_state.languages or "none",
        job_state.options,
    )
    return job_state


def get_job(job_id: str) -> Optional[JobState]:
    """Fetch a job by ID (if still retained)."""
    with _jobs_lock:
        job = _jobs.get(job_id)
        if job and job.finished_at and (time.time() - job.finished_at) > _JOB_RETENTION_SECONDS:
            _jobs.pop(job_id, None)
            return None
        return job


def list_jobs() -> List[JobState]:
    """All retained jobs, newest first."""
    with _jobs_lock:
        _cleanup_jobs_locked()
        return sorted(_jobs.values(), key=lambda j: j.created_at, reverse=True)


def cancel_job(job_id: str) -> bool:
    """
    Request cancellation of a running job.

    Returns:
        True if job was found and cancellation requested, False otherwise.
    """
    with _jobs_lock:
        job = _jobs.get(job_id)
        if not job:
            return False
        if job.state in ("completed", "failed", "cancelled"):
            return False
        job.request_cancel()
        logger.info("Cancellation requested for job %s", job_id)
        return True


def active_evaluation_languages() -> Dict[str, str]:
    with _jobs_lock:
        return dict(_active_languages)


def serialize_job(job: JobState) -> Dict[str, Any]:
    """Convert JobState into JSON-safe dict."""
    with _jobs_lock:
        return job.to_dict()


async def _execute(job: JobState, cancel_check: Callable[[], bool],
                   on_progress: Callable[[PipelineProgress], None]) -> Dict[str, Any]:
    settings = PipelineSettings.from_config()
    async with client_factory() as client:
        if job.kind == "fill":
            dispatcher = TranslationBatchDispatcher(client, settings=settings)
            report = await dispatcher.fill_missing(job.languages, cancel_check, on_progress)
        elif job.kind == "refine":
            dispatcher = TranslationBatchDispatcher(client, settings=settings)
            report = await dispatcher.refine_languages(
                job.languages,
                RefineFilter.from_dict(job.options.get("filter")),
                cancel_check,
                on_progress,
            )
        elif job.kind == "pipeline":
            runner = PipelineRunner(client, settings=settings)
            report = await runner.run(
                job.languages,
                cancel_check,
                on_progress,
                reevaluate_all=bool(job.options.get("reevaluate_all")),
            )
        else:
            orchestrator = EvaluationOrchestrator(client, settings=settings)
            report = await orchestrator.evaluate_languages(
                job.languages,
                reevaluate_all=bool(job.options.get("reevaluate_all")),
                cancel_check=cancel_check,
                progress_callback=on_progress,
            )
    return report.to_dict()


def _run_job(job: JobState):
    """Worker function executed in a background thread."""
    job.state = "running"
    job.started_at = time.time()
    job.last_update = job.started_at

    def on_progress(progress: PipelineProgress):
        with _jobs_lock:
            serialized = progress.to_dict()
            job.progress = serialized
            job.progress_history.append(serialized)
            job.last_update = time.time()

    def check_cancel() -> bool:
        with _jobs_lock:
            return job.cancel_requested

    try:
        result = asyncio.run(_execute(job, check_cancel, on_progress))
        with _jobs_lock:
            _release_languages_locked(job)
            job.result = result
            if job.cancel_requested:
                job.state = "cancelled"
            else:
                job.state = "completed" if result.get("success", True) else "failed"
            job.finished_at = time.time()
            job.last_update = job.finished_at
        logger.info(
            "%s job %s finished (state=%s): %s",
            job.kind.capitalize(),
            job.job_id,
            job.state,
            result.get("message"),
        )
    except Exception as exc:
        error_type = type(exc).__name__
        with _jobs_lock:
            _release_languages_locked(job)
            job.state = "failed"
            job.error = f"{error_type}: {exc}"
            job.finished_at = time.time()
            job.last_update = job.finished_at
        logger.exception("✗ %s job %s failed: %s: %s", job.kind, job.job_id, error_type, exc)


def _release_languages_locked(job: JobState):
    """Drop the evaluation guard held by a job (call with lock held)."""
    for code in [c for c, owner in _active_languages.items() if owner == job.job_id]:
        _active_languages.pop(code, None)


def _cleanup_jobs_locked():
    """Remove completed jobs that exceeded retention period (call with lock held)."""
    now = time.time()
    expired = [
        job_id
        for job_id, job in _jobs.items()
        if job.finished_at and (now - job.finished_at) > _JOB_RETENTION_SECONDS
    ]
    for job_id in expired:
        _jobs.pop(job_id, None)
