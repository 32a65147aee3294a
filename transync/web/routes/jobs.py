"""Background job API routes (fill, refine, evaluate, full pipeline)."""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from transync.logger import get_logger
from transync.web import tasks

from .sync import parse_language_list

jobs_bp = Blueprint("jobs", __name__)
logger = get_logger(__name__)

REFINE_FILTER_FIELDS = {"review_status", "max_quality_score", "unapproved_only", "page_location", "keys"}


def _start(kind: str, options: Dict[str, Any] = None):
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    languages, error = parse_language_list(data)
    if error:
        return jsonify({"error": error}), 400

    try:
        job = tasks.create_job(kind, languages=languages, options=options)
    except tasks.JobConflictError as exc:
        return jsonify({"error": str(exc), "languages": exc.languages}), 409

    return jsonify({"job_id": job.job_id, "job": tasks.serialize_job(job)}), 202


@jobs_bp.post("/translate")
def start_fill_job():
    """Fill untranslated keys of the given (or all) target languages."""
    return _start("fill")


@jobs_bp.post("/refine")
def start_refine_job():
    """Refine filtered rows in concurrent batches."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    refine_filter = data.get("filter") or {}
    if not isinstance(refine_filter, dict):
        return jsonify({"error": "filter must be an object"}), 400
    unknown = set(refine_filter) - REFINE_FILTER_FIELDS
    if unknown:
        return jsonify({"error": f"Unknown filter fields: {', '.join(sorted(unknown))}"}), 400
    if "max_quality_score" in refine_filter:
        try:
            float(refine_filter["max_quality_score"])
        except (TypeError, ValueError):
            return jsonify({"error": "max_quality_score must be a number"}), 400
    return _start("refine", {"filter": refine_filter})


@jobs_bp.post("/evaluate")
def start_evaluation_job():
    """Evaluate languages sequentially, resuming from stored checkpoints."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    return _start("evaluate", {"reevaluate_all": bool(data.get("reevaluate_all", False))})


@jobs_bp.post("/pipeline")
def start_pipeline_job():
    """Sync, fill, evaluate, auto-approve and update visibility in one run."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    return _start("pipeline", {"reevaluate_all": bool(data.get("reevaluate_all", False))})


@jobs_bp.get("/jobs")
def list_jobs():
    return jsonify({"jobs": [tasks.serialize_job(job) for job in tasks.list_jobs()]})


@jobs_bp.get("/jobs/<job_id>")
def get_job(job_id: str):
    job = tasks.get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404
    return jsonify(tasks.serialize_job(job))


@jobs_bp.post("/jobs/<job_id>/cancel")
def cancel_job(job_id: str):
    if not tasks.cancel_job(job_id):
        return jsonify({"error": "Job not found or already finished"}), 404
    return jsonify({"job_id": job_id, "cancel_requested": True})
