"""
Stuck evaluation detection.

An evaluation left in_progress is stuck when its heartbeat (updated_at) is
older than the heartbeat threshold, or when it has evaluated nothing for
longer than the no-progress threshold. Resetting clears only the
resumability checkpoint; translated texts and quality scores stay.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger
from transync.translation.progress import STATUS_IN_PROGRESS

logger = get_logger(__name__)

REASON_NO_HEARTBEAT = "no_heartbeat"
REASON_NO_PROGRESS = "no_progress"


@dataclass
class StuckJob:
    language_code: str
    minutes_since_update: float
    evaluated_keys: int
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable progress timestamp: {value!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class StuckJobDetector:
    """Watchdog over the evaluation progress rows."""

    def __init__(self, store=None, settings: PipelineSettings = None):
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()

    def find_stuck(self, now: datetime = None) -> List[StuckJob]:
        now = now or datetime.now(timezone.utc)
        stuck = []
        for row in self.store.get_all_progress(status=STATUS_IN_PROGRESS):
            updated_at = _parse_timestamp(row.get("updated_at"))
            if updated_at is None:
                minutes = float("inf")
            else:
                minutes = (now - updated_at).total_seconds() / 60

            evaluated = row.get("evaluated_keys") or 0
            if minutes >= self.settings.stuck_heartbeat_minutes:
                reason = REASON_NO_HEARTBEAT
            elif evaluated == 0 and minutes >= self.settings.stuck_no_progress_minutes:
                reason = REASON_NO_PROGRESS
            else:
                continue

            stuck.append(StuckJob(
                language_code=row["language_code"],
                minutes_since_update=round(minutes, 1) if minutes != float("inf") else -1,
                evaluated_keys=evaluated,
                reason=reason,
            ))
        return stuck

    def reset_stuck(self, now: datetime = None, exclude: Iterable[str] = ()) -> List[StuckJob]:
        """
        Reset every stuck evaluation to idle.

        Args:
            now: Reference time (defaults to the current UTC time).
            exclude: Languages to leave alone, e.g. ones a live job still owns.

        Returns:
            The jobs that were reset.
        """
        excluded = set(exclude)
        stuck = [job for job in self.find_stuck(now) if job.language_code not in excluded]
        for job in stuck:
            self.store.reset_progress(job.language_code)
            logger.warning(
                f"{job.language_code}: reset stuck evaluation ({job.reason}, "
                f"{job.minutes_since_update} min since update, {job.evaluated_keys} evaluated)"
            )
        if not stuck:
            logger.debug("Watchdog found no stuck evaluations")
        return stuck
