"""Settings management API routes."""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

import transync.config as config
from transync.logger import LOG_MODES, get_logger

settings_bp = Blueprint("settings", __name__)
logger = get_logger(__name__)


def _masked(current: Dict[str, Any]) -> Dict[str, Any]:
    service = dict(current.get("service") or {})
    api_key = service.get("api_key")
    if api_key and api_key != config.API_KEY_PLACEHOLDER:
        service["api_key"] = f"{api_key[:4]}..." if len(api_key) > 8 else "***"
    return {**current, "service": service}


@settings_bp.get("/")
def get_settings():
    """Return current configuration with defaults merged (API key masked)."""
    current_config = config.load_config()
    return jsonify({"config": _masked(current_config), "defaults": config.DEFAULT_CONFIG})


@settings_bp.put("/")
def update_settings():
    """Update configuration sections (service, pipeline, log_mode)."""
    data = request.get_json(silent=True)
    if not data or "config" not in data or not isinstance(data["config"], dict):
        return jsonify({"error": "config object is required"}), 400

    new_config = data["config"]
    unknown = set(new_config) - set(config.DEFAULT_CONFIG)
    if unknown:
        return jsonify({"error": f"Unknown config sections: {', '.join(sorted(unknown))}"}), 400
    if "log_mode" in new_config and new_config["log_mode"] not in LOG_MODES:
        return jsonify({"error": f"log_mode must be one of {', '.join(LOG_MODES)}"}), 400

    current_config = config.load_config()
    for section in ("service", "pipeline"):
        if section in new_config:
            if not isinstance(new_config[section], dict):
                return jsonify({"error": f"{section} must be an object"}), 400
            update = dict(new_config[section])
            # A masked key echoed back from GET must not overwrite the stored one
            if section == "service" and str(update.get("api_key", "")).endswith(("...", "***")):
                update.pop("api_key")
            current_config[section].update(update)
    if "log_mode" in new_config:
        current_config["log_mode"] = new_config["log_mode"]

    try:
        config.PipelineSettings.from_config(current_config)
    except (TypeError, ValueError) as e:
        return jsonify({"error": f"Invalid pipeline settings: {e}"}), 400

    config.save_config(current_config)
    logger.info("Settings updated: %s", ", ".join(sorted(new_config)))
    return jsonify({"config": _masked(current_config)})
