"""Evaluation progress control API routes."""

from __future__ import annotations

from flask import Blueprint, jsonify

from transync.core import database as db
from transync.logger import get_logger
from transync.translation import evaluator
from transync.translation.progress import EvaluationProgress
from transync.translation.watchdog import StuckJobDetector
from transync.web import tasks

evaluation_bp = Blueprint("evaluation", __name__)
logger = get_logger(__name__)


def _language_or_404(language_code: str):
    if db.get_language(language_code) is None:
        return jsonify({"error": f"Unknown language: {language_code}"}), 404
    return None


@evaluation_bp.get("/progress")
def list_progress():
    """Every evaluation checkpoint, with the languages currently owned by a job."""
    active = tasks.active_evaluation_languages()
    items = []
    for row in db.get_all_progress():
        payload = EvaluationProgress.from_row(row).to_dict()
        payload["active_job_id"] = active.get(row["language_code"])
        items.append(payload)
    return jsonify({"progress": items})


@evaluation_bp.get("/progress/<language_code>")
def get_progress(language_code: str):
    missing = _language_or_404(language_code)
    if missing:
        return missing
    progress = EvaluationProgress.from_row(db.get_progress(language_code), language_code)
    return jsonify(progress.to_dict())


@evaluation_bp.post("/evaluate/<language_code>/pause")
def pause(language_code: str):
    missing = _language_or_404(language_code)
    if missing:
        return missing
    if not evaluator.pause_evaluation(language_code):
        return jsonify({"error": "Evaluation is not in progress"}), 409
    return jsonify({"language_code": language_code, "status": "paused"})


@evaluation_bp.post("/evaluate/<language_code>/reset")
def reset(language_code: str):
    """Clear the checkpoint (the way out of the error state)."""
    missing = _language_or_404(language_code)
    if missing:
        return missing
    if language_code in tasks.active_evaluation_languages():
        return jsonify({"error": "Evaluation job is running for this language"}), 409
    evaluator.reset_evaluation(language_code)
    return jsonify({"language_code": language_code, "status": "idle"})


@evaluation_bp.post("/evaluate/<language_code>/restart")
def restart(language_code: str):
    """Clear the checkpoint and the language's quality scores."""
    missing = _language_or_404(language_code)
    if missing:
        return missing
    if language_code in tasks.active_evaluation_languages():
        return jsonify({"error": "Evaluation job is running for this language"}), 409
    cleared = evaluator.restart_evaluation(language_code)
    return jsonify({"language_code": language_code, "status": "idle", "scores_cleared": cleared})


@evaluation_bp.get("/watchdog")
def find_stuck():
    stuck = StuckJobDetector().find_stuck()
    return jsonify({"stuck": [job.to_dict() for job in stuck]})


@evaluation_bp.post("/watchdog")
def reset_stuck():
    """Reset evaluations whose heartbeat went stale."""
    stuck = StuckJobDetector().reset_stuck(exclude=tasks.active_evaluation_languages())
    return jsonify({"reset": [job.to_dict() for job in stuck]})
