"""Route blueprints for the web application."""

from .sync import sync_bp
from .jobs import jobs_bp
from .evaluation import evaluation_bp
from .languages import languages_bp
from .settings import settings_bp

__all__ = [
    "sync_bp",
    "jobs_bp",
    "evaluation_bp",
    "languages_bp",
    "settings_bp",
]
