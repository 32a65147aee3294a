"""Language, approval, visibility, statistics and export API routes."""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from transync.core import database as db
from transync.core import export, validation
from transync.core.tree import load_language_tree
from transync.core.validation import IncompleteTranslationError
from transync.logger import get_logger
from transync.translation.approval import ApprovalGate
from transync.translation.visibility import VisibilitySync

from .sync import parse_language_list

languages_bp = Blueprint("languages", __name__)
logger = get_logger(__name__)


def _language_or_404(language_code: str):
    if db.get_language(language_code) is None:
        return jsonify({"error": f"Unknown language: {language_code}"}), 404
    return None


@languages_bp.get("/languages")
def list_languages():
    return jsonify({"languages": db.get_languages()})


@languages_bp.post("/languages")
def create_language():
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    code = (data.get("code") or "").strip()
    name = (data.get("name") or "").strip()
    if not code or not name:
        return jsonify({"error": "code and name are required"}), 400
    db.upsert_language(
        code,
        name,
        native_name=data.get("native_name"),
        enabled=bool(data.get("enabled", True)),
        sort_order=int(data.get("sort_order", 0)),
    )
    logger.info("Language %s saved", code)
    return jsonify(db.get_language(code)), 201


@languages_bp.post("/languages/<language_code>/approve-all")
def approve_all(language_code: str):
    """Approve every pending row; refused while empty rows remain."""
    missing = _language_or_404(language_code)
    if missing:
        return missing
    result = ApprovalGate().approve_all(language_code)
    return jsonify(result.to_dict()), (409 if result.refused else 200)


@languages_bp.post("/languages/<language_code>/approve")
def approve_selected(language_code: str):
    missing = _language_or_404(language_code)
    if missing:
        return missing
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    keys = data.get("keys")
    if not isinstance(keys, list) or not keys or not all(isinstance(k, str) for k in keys):
        return jsonify({"error": "keys must be a non-empty list of translation keys"}), 400
    result = ApprovalGate().approve_keys(language_code, keys)
    return jsonify(result.to_dict()), (409 if result.refused else 200)


@languages_bp.post("/languages/<language_code>/unapprove")
def unapprove(language_code: str):
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    key = data.get("key")
    if not isinstance(key, str) or not key:
        return jsonify({"error": "key is required"}), 400
    changed = ApprovalGate().unapprove(language_code, key)
    return jsonify({"language_code": language_code, "key": key, "changed": changed})


@languages_bp.put("/languages/<language_code>/translations")
def update_translation(language_code: str):
    """Manual text edit; the row returns to unapproved."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    key = data.get("key")
    text = data.get("text")
    if not isinstance(key, str) or not key or not isinstance(text, str):
        return jsonify({"error": "key and text are required"}), 400
    if not ApprovalGate().update_text(language_code, key, text):
        return jsonify({"error": "Translation not found"}), 404
    return jsonify(db.get_translation(language_code, key))


@languages_bp.post("/approve/auto")
def auto_approve():
    """Quality-threshold auto-approval across target languages."""
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    languages, error = parse_language_list(data)
    if error:
        return jsonify({"error": error}), 400
    report = ApprovalGate().auto_approve_quality(languages)
    return jsonify(report.to_dict())


@languages_bp.post("/visibility/sync")
def sync_visibility():
    decisions = VisibilitySync().sync_visibility()
    return jsonify({"languages": [d.to_dict() for d in decisions]})


@languages_bp.put("/languages/<language_code>/visibility")
def set_visibility(language_code: str):
    data: Dict[str, Any] = request.get_json(silent=True) or {}
    visible = data.get("show_in_switcher")
    if not isinstance(visible, bool):
        return jsonify({"error": "show_in_switcher must be a boolean"}), 400
    try:
        changed = VisibilitySync().set_visibility(language_code, visible)
    except KeyError:
        return jsonify({"error": f"Unknown language: {language_code}"}), 404
    return jsonify({"language_code": language_code, "show_in_switcher": visible, "changed": changed})


@languages_bp.get("/stats")
def all_stats():
    return jsonify({"languages": [s.to_dict() for s in validation.get_all_language_stats()]})


@languages_bp.get("/stats/<language_code>")
def language_stats(language_code: str):
    try:
        stats = validation.get_language_stats(language_code)
    except KeyError:
        return jsonify({"error": f"Unknown language: {language_code}"}), 404
    return jsonify(stats.to_dict())


@languages_bp.get("/languages/<language_code>/export")
def export_language(language_code: str):
    missing = _language_or_404(language_code)
    if missing:
        return missing
    return jsonify(export.export_language(language_code))


@languages_bp.get("/locales/<language_code>")
def locale_tree(language_code: str):
    """Nested resource tree served to the runtime (approved rows only for targets)."""
    missing = _language_or_404(language_code)
    if missing:
        return missing
    if request.args.get("strict") in ("1", "true"):
        try:
            export.ensure_complete(language_code)
        except IncompleteTranslationError as exc:
            return jsonify({"error": str(exc), "missing_keys": exc.missing_keys}), 409
    return jsonify(load_language_tree(language_code))
