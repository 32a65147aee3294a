"""
Core module - Persistence and key-set utilities

This module provides:
- database: CRUD operations for languages, translations and evaluation progress
- schema: Database initialization and migrations
- sync: Master key set synchronization
- tree: Flat key rows to nested locale tree
- validation: Per-language statistics and health checks
- export: JSON dumps and locale files
"""

from transync.core.database import (
    DB_FILE,
    get_connection,
    # Language operations
    upsert_language,
    get_language,
    get_languages,
    set_language_visibility,
    # Translation operations
    upsert_translation,
    get_translation,
    get_translations,
    get_translation_keys,
    insert_placeholders,
    update_translated_text,
    # Evaluation progress operations
    get_progress,
    get_all_progress,
    checkpoint_evaluation,
    update_progress,
    reset_progress,
    # App config operations
    get_app_config,
    set_app_config,
)

from transync.core.schema import (
    DB_VERSION,
    get_db_version,
    set_db_version,
    initialize_database,
    ensure_all_schemas,
    migrate_database,
)
