"""Flask application configuration and blueprint registration."""

from __future__ import annotations

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from transync.core.schema import get_db_version
from transync.logger import get_logger

from .routes.sync import sync_bp
from .routes.jobs import jobs_bp
from .routes.evaluation import evaluation_bp
from .routes.languages import languages_bp
from .routes.settings import settings_bp

logger = get_logger(__name__)


def build_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Ensure JSON responses keep Unicode data.
    app.json.ensure_ascii = False

    register_blueprints(app)
    register_default_routes(app)

    return app


def register_blueprints(app: Flask) -> None:
    """Register Flask blueprints."""
    app.register_blueprint(sync_bp, url_prefix="/api")
    app.register_blueprint(jobs_bp, url_prefix="/api")
    app.register_blueprint(evaluation_bp, url_prefix="/api")
    app.register_blueprint(languages_bp, url_prefix="/api")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")


def register_default_routes(app: Flask) -> None:
    """Register health route and JSON error handlers."""

    @app.get("/health")
    def health_check():
        logger.debug("Health check requested")
        return jsonify({"status": "ok", "db_version": get_db_version()})

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(e):
        """Handle 500 errors with a JSON body."""
        original = getattr(e, "original_exception", None) or e
        if isinstance(original, HTTPException):
            return jsonify({"error": original.description}), original.code
        logger.exception("Internal server error: %s", original)
        return jsonify({"error": "Internal server error"}), 500
