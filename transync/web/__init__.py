"""Web application package for Transync."""

from flask import Flask

from transync.config import initialize_app


def create_app() -> Flask:
    """Application factory for the HTTP API."""
    initialize_app()

    from .app import build_app  # Import here to avoid circular imports

    return build_app()


__all__ = ["create_app"]
