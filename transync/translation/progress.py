"""
Progress Data Classes

Contains the EvaluationProgress checkpoint (one per language), the status
transitions it may take, and PipelineProgress used to report live progress
of background jobs.
"""

from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any

STATUS_IDLE = "idle"
STATUS_IN_PROGRESS = "in_progress"
STATUS_PAUSED = "paused"
STATUS_COMPLETED = "completed"
STATUS_ERROR = "error"

STATUSES = (STATUS_IDLE, STATUS_IN_PROGRESS, STATUS_PAUSED, STATUS_COMPLETED, STATUS_ERROR)

# Allowed status transitions. Re-entering in_progress from in_progress is a
# resume after a crash; completed -> in_progress is an explicit re-evaluation.
TRANSITIONS = {
    STATUS_IDLE: {STATUS_IN_PROGRESS},
    STATUS_IN_PROGRESS: {STATUS_IN_PROGRESS, STATUS_PAUSED, STATUS_COMPLETED, STATUS_ERROR, STATUS_IDLE},
    STATUS_PAUSED: {STATUS_IN_PROGRESS, STATUS_IDLE},
    STATUS_COMPLETED: {STATUS_IDLE, STATUS_IN_PROGRESS},
    STATUS_ERROR: {STATUS_IDLE},
}


class InvalidTransitionError(ValueError):
    """A status change the evaluation state machine does not allow."""


def check_transition(current: str, target: str) -> None:
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransitionError(f"Cannot move evaluation from '{current}' to '{target}'")


@dataclass
class EvaluationProgress:
    """Resumable evaluation checkpoint of one language."""
    language_code: str
    status: str = STATUS_IDLE
    total_keys: int = 0
    evaluated_keys: int = 0
    last_evaluated_key: Optional[str] = None
    error_count: int = 0
    last_error: Optional[str] = None
    error_message: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]], language_code: str = None) -> "EvaluationProgress":
        if not row:
            return cls(language_code=language_code)
        return cls(
            language_code=row["language_code"],
            status=row.get("status") or STATUS_IDLE,
            total_keys=row.get("total_keys") or 0,
            evaluated_keys=row.get("evaluated_keys") or 0,
            last_evaluated_key=row.get("last_evaluated_key"),
            error_count=row.get("error_count") or 0,
            last_error=row.get("last_error"),
            error_message=row.get("error_message"),
            started_at=row.get("started_at"),
            completed_at=row.get("completed_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_resumable(self) -> bool:
        """in_progress or paused with a watermark to continue from."""
        return self.status in (STATUS_IN_PROGRESS, STATUS_PAUSED) and bool(self.last_evaluated_key)

    @property
    def percentage(self) -> float:
        if not self.total_keys:
            return 0.0
        return round(self.evaluated_keys / self.total_keys * 100, 1)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["percentage"] = self.percentage
        return payload


@dataclass
class PipelineProgress:
    """Live progress of a multi-language job, reported through progress callbacks."""
    current_language: str
    total_languages: int
    completed_languages: int
    phase: str = "running"           # "running", "waiting", "paused", "completed"
    processed: int = 0               # Items processed in the current language
    total: int = 0                   # Items to process in the current language
    success_count: int = 0
    failure_count: int = 0
    current_batch: int = 0           # 1-indexed, refine mode only
    total_batches: int = 0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
