"""Key synchronization and health API routes."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from flask import Blueprint, jsonify, request

from transync.core import validation
from transync.core.sync import KeySynchronizer
from transync.logger import get_logger

sync_bp = Blueprint("sync", __name__)
logger = get_logger(__name__)


def parse_language_list(data: Dict[str, Any]) -> Tuple[Optional[List[str]], Optional[str]]:
    """
    Read an optional "languages" list from a request body.

    Returns:
        (languages, error). languages is None when the field is absent.
    """
    languages = data.get("languages")
    if languages is None:
        return None, None
    if not isinstance(languages, list) or not all(isinstance(code, str) and code.strip() for code in languages):
        return None, "languages must be a list of non-empty language codes"
    return [code.strip() for code in languages], None


@sync_bp.post("/sync")
def sync_missing_keys():
    """Create placeholder rows for master keys missing in target languages."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    languages, error = parse_language_list(data)
    if error:
        return jsonify({"error": error}), 400

    report = KeySynchronizer().sync_missing_keys(languages)
    logger.info("Sync requested via API: %s rows inserted", report.total_inserted)
    return jsonify(report.to_dict())


@sync_bp.post("/sync/prune")
def prune_orphan_keys():
    """Delete target rows whose key left the master key set."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    languages, error = parse_language_list(data)
    if error:
        return jsonify({"error": error}), 400

    report = KeySynchronizer().prune_orphan_keys(languages)
    return jsonify(report.to_dict())


@sync_bp.post("/sync/import")
def import_master_file():
    """Import the master key set from a nested JSON locale file on disk."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    path = data.get("path")
    if not isinstance(path, str) or not path.strip():
        return jsonify({"error": "path is required"}), 400

    source_file_path = Path(path)
    if not source_file_path.exists():
        return jsonify({"error": "Master file not found", "path": str(source_file_path)}), 400

    try:
        result = KeySynchronizer().import_master_file(source_file_path)
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Rejected master file %s: %s", source_file_path, exc)
        return jsonify({"error": f"Invalid master file: {exc}"}), 400

    logger.info("Master file imported from %s: %s", source_file_path, result)
    return jsonify(result.to_dict())


@sync_bp.get("/health-report")
def health_report():
    """Missing, placeholder and orphan keys per target language."""
    report = validation.get_health_report()
    return jsonify({
        "healthy": all(item.healthy for item in report),
        "languages": [item.to_dict() for item in report],
    })
