"""
Database Schema Management Module

This module handles database initialization, schema validation, and migrations.
For CRUD operations, see core/database.py
"""

import sqlite3

# Import database module to use DB_FILE and get_connection dynamically
# This ensures monkeypatching in tests works correctly
import transync.core.database as db
from transync.logger import get_logger

logger = get_logger(__name__)

DB_VERSION = 3  # Increment when schema changes (evaluation error_message in v2, indexes in v3)


def get_connection():
    """Get a database connection using the database module's DB_FILE."""
    return db.get_connection()


def get_db_version() -> int:
    """Get current database version."""
    try:
        with get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT version FROM db_version LIMIT 1")
            row = cursor.fetchone()
            return row[0] if row else 0
    except sqlite3.OperationalError:
        return 0


def set_db_version(version: int):
    """Set database version."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("CREATE TABLE IF NOT EXISTS db_version (version INTEGER)")
        cursor.execute("DELETE FROM db_version")
        cursor.execute("INSERT INTO db_version (version) VALUES (?)", (version,))
        conn.commit()


def initialize_database():
    """Initializes the database and creates the tables."""
    if db.DB_FILE.exists() and get_db_version() > 0:
        current_version = get_db_version()
        if current_version < DB_VERSION:
            migrate_database(current_version, DB_VERSION)
        else:
            # Verify that all required columns exist even if the version matches
            ensure_all_schemas()
        return

    db.DB_FILE.parent.mkdir(parents=True, exist_ok=True)

    with get_connection() as conn:
        cursor = conn.cursor()

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS languages (
            code TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            native_name TEXT,
            enabled INTEGER NOT NULL DEFAULT 1,
            show_in_switcher INTEGER NOT NULL DEFAULT 0,
            sort_order INTEGER NOT NULL DEFAULT 0
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS translations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            language_code TEXT NOT NULL,
            translation_key TEXT NOT NULL,
            translated_text TEXT,
            approved INTEGER NOT NULL DEFAULT 0,
            approved_at TIMESTAMP,
            quality_score REAL,
            quality_metrics TEXT,
            review_status TEXT NOT NULL DEFAULT 'pending',
            page_location TEXT,
            context TEXT,
            updated_at TIMESTAMP,
            UNIQUE (language_code, translation_key)
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS evaluation_progress (
            language_code TEXT PRIMARY KEY,
            status TEXT NOT NULL DEFAULT 'idle',
            total_keys INTEGER NOT NULL DEFAULT 0,
            evaluated_keys INTEGER NOT NULL DEFAULT 0,
            last_evaluated_key TEXT,
            error_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            error_message TEXT,
            started_at TIMESTAMP,
            completed_at TIMESTAMP,
            updated_at TIMESTAMP
        )
        """)

        cursor.execute("""
        CREATE TABLE IF NOT EXISTS app_config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """)

        conn.commit()

    ensure_database_indexes()
    set_db_version(DB_VERSION)
    logger.info(f"Database created at {db.DB_FILE} (version {DB_VERSION})")


# ============================================================
# Database Schema Validation
# ============================================================

def ensure_evaluation_progress_schema():
    """
    Ensure evaluation_progress table has all required columns.
    This function should be called during database initialization/migration.
    """
    try:
        with get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("PRAGMA table_info(evaluation_progress)")
            existing_cols = {row[1] for row in cursor.fetchall()}

            if "error_message" not in existing_cols:
                logger.info("Adding error_message column to evaluation_progress table")
                cursor.execute("ALTER TABLE evaluation_progress ADD COLUMN error_message TEXT")

            if "completed_at" not in existing_cols:
                logger.info("Adding completed_at column to evaluation_progress table")
                cursor.execute("ALTER TABLE evaluation_progress ADD COLUMN completed_at TIMESTAMP")

            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to ensure evaluation_progress schema: {e}")
        raise


def ensure_translations_schema():
    """
    Ensure translations table has the review columns added after the first release.
    """
    try:
        with get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("PRAGMA table_info(translations)")
            existing_cols = {row[1] for row in cursor.fetchall()}

            if "quality_metrics" not in existing_cols:
                logger.info("Adding quality_metrics column to translations table")
                cursor.execute("ALTER TABLE translations ADD COLUMN quality_metrics TEXT")

            if "review_status" not in existing_cols:
                logger.info("Adding review_status column to translations table")
                cursor.execute(
                    "ALTER TABLE translations ADD COLUMN review_status TEXT NOT NULL DEFAULT 'pending'"
                )

            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to ensure translations schema: {e}")
        raise


def ensure_database_indexes():
    """
    Ensure all performance-critical indexes exist.
    This function should be called during database initialization/migration.
    """
    try:
        with get_connection() as conn:
            cursor = conn.cursor()

            logger.debug("Ensuring translations table indexes...")

            # Per-language scans ordered by key (evaluation, export, tree build)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_translations_language_key
                ON translations(language_code, translation_key)
            """)

            # Approval and visibility counts
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_translations_language_approved
                ON translations(language_code, approved)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_evaluation_progress_status
                ON evaluation_progress(status)
            """)

            conn.commit()
    except sqlite3.Error as e:
        logger.error(f"Failed to ensure database indexes: {e}")
        raise


def ensure_all_schemas():
    """
    Ensure all tables have all required columns and indexes.
    This is a convenience function that calls all individual schema validation functions.
    """
    ensure_translations_schema()
    ensure_evaluation_progress_schema()
    ensure_database_indexes()


# ============================================================
# Database Migration
# ============================================================

def migrate_database(from_version: int, to_version: int):
    """
    Migrate database from one version to another.

    Every migration so far only adds columns or indexes, so ensuring schema
    integrity covers all known versions.
    """
    logger.info(f"Migrating database from version {from_version} to {to_version}")

    ensure_all_schemas()
    set_db_version(to_version)

    logger.info(f"Database migration completed: now at version {to_version}")
