"""
Database CRUD Operations Module

This module handles all database CRUD operations for:
- Languages
- Translations (one row per language and key)
- Evaluation progress checkpoints
- App Config

Every pipeline component receives this module as its default ``store``; any
object exposing the same functions can stand in for it.

For schema management and migrations, see core/schema.py
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any, Iterable, Sequence, Set, Tuple

DB_FILE = Path(os.environ.get("TRANSYNC_DB") or Path(__file__).parent.parent.parent / "translations.db")

PROGRESS_FIELDS = (
    "status",
    "total_keys",
    "evaluated_keys",
    "last_evaluated_key",
    "error_count",
    "last_error",
    "error_message",
    "started_at",
    "completed_at",
)


def get_connection():
    """Get a database connection."""
    return sqlite3.connect(DB_FILE, timeout=30)


def _now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _translation_row(row: sqlite3.Row) -> Dict[str, Any]:
    item = dict(row)
    item["approved"] = bool(item.get("approved"))
    metrics = item.get("quality_metrics")
    if metrics:
        try:
            item["quality_metrics"] = json.loads(metrics)
        except json.JSONDecodeError:
            item["quality_metrics"] = None
    return item


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


# ============================================================
# Language CRUD Operations
# ============================================================

def upsert_language(code: str, name: str, native_name: str = None, enabled: bool = True,
                    show_in_switcher: bool = False, sort_order: int = 0):
    """Create a language or update its descriptive fields."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO languages (code, name, native_name, enabled, show_in_switcher, sort_order)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                name = excluded.name,
                native_name = excluded.native_name,
                enabled = excluded.enabled,
                sort_order = excluded.sort_order
        """, (code, name, native_name or name, 1 if enabled else 0,
              1 if show_in_switcher else 0, sort_order))
        conn.commit()


def get_language(code: str) -> Optional[Dict[str, Any]]:
    """Get a language by code."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM languages WHERE code = ?", (code,))
        row = cursor.fetchone()
        if not row:
            return None
        item = dict(row)
        item["enabled"] = bool(item["enabled"])
        item["show_in_switcher"] = bool(item["show_in_switcher"])
        return item


def get_languages(enabled_only: bool = False) -> List[Dict[str, Any]]:
    """Get languages ordered by sort_order, then code."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        query = "SELECT * FROM languages"
        if enabled_only:
            query += " WHERE enabled = 1"
        cursor.execute(query + " ORDER BY sort_order, code")
        languages = []
        for row in cursor.fetchall():
            item = dict(row)
            item["enabled"] = bool(item["enabled"])
            item["show_in_switcher"] = bool(item["show_in_switcher"])
            languages.append(item)
        return languages


def set_language_visibility(code: str, visible: bool) -> bool:
    """Set show_in_switcher. Returns True if the stored value changed."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            UPDATE languages SET show_in_switcher = ?
            WHERE code = ? AND show_in_switcher != ?
        """, (1 if visible else 0, code, 1 if visible else 0))
        conn.commit()
        return cursor.rowcount > 0


# ============================================================
# Translation CRUD Operations
# ============================================================

def upsert_translation(language_code: str, translation_key: str, translated_text: Optional[str],
                       page_location: str = None, context: str = None,
                       approved: bool = False) -> None:
    """Create or replace the text of a translation row."""
    now = _now()
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO translations
            (language_code, translation_key, translated_text, page_location, context,
             approved, approved_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(language_code, translation_key) DO UPDATE SET
                translated_text = excluded.translated_text,
                page_location = COALESCE(excluded.page_location, translations.page_location),
                context = COALESCE(excluded.context, translations.context),
                approved = excluded.approved,
                approved_at = excluded.approved_at,
                updated_at = excluded.updated_at
        """, (language_code, translation_key, translated_text, page_location, context,
              1 if approved else 0, now if approved else None, now))
        conn.commit()


def get_translation(language_code: str, translation_key: str) -> Optional[Dict[str, Any]]:
    """Get a specific translation."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute("""
            SELECT * FROM translations
            WHERE language_code = ? AND translation_key = ?
        """, (language_code, translation_key))
        row = cursor.fetchone()
        return _translation_row(row) if row else None


def get_translations(language_code: str, approved_only: bool = False) -> List[Dict[str, Any]]:
    """Get all translation rows of a language, ordered by key."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        query = "SELECT * FROM translations WHERE language_code = ?"
        if approved_only:
            query += " AND approved = 1"
        cursor.execute(query + " ORDER BY translation_key", (language_code,))
        return [_translation_row(row) for row in cursor.fetchall()]


def get_translation_keys(language_code: str) -> Set[str]:
    """Get the set of keys present for a language."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT translation_key FROM translations WHERE language_code = ?",
                       (language_code,))
        return {row[0] for row in cursor.fetchall()}


def count_translations(language_code: str) -> int:
    """Count rows of a language."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM translations WHERE language_code = ?", (language_code,))
        return cursor.fetchone()[0]


def count_approved(language_code: str, source_language: str = None) -> int:
    """
    Count approved rows of a language. With source_language, only keys that
    also exist in the source language (the master set) are counted.
    """
    query = "SELECT COUNT(*) FROM translations WHERE language_code = ? AND approved = 1"
    params: List[Any] = [language_code]
    if source_language:
        query += """
            AND translation_key IN (
                SELECT translation_key FROM translations WHERE language_code = ?
            )"""
        params.append(source_language)
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchone()[0]


def insert_placeholders(language_code: str, rows: Iterable[Tuple[str, Optional[str], Optional[str]]]) -> int:
    """
    Insert placeholder rows (text = key) for missing keys in one transaction.

    Args:
        language_code: Target language.
        rows: (translation_key, page_location, context) tuples.

    Returns:
        Number of rows actually inserted. Existing keys are left untouched.
    """
    now = _now()
    with get_connection() as conn:
        cursor = conn.cursor()
        before = conn.total_changes
        cursor.executemany("""
            INSERT OR IGNORE INTO translations
            (language_code, translation_key, translated_text, page_location, context,
             approved, review_status, updated_at)
            VALUES (?, ?, ?, ?, ?, 0, 'pending', ?)
        """, [(language_code, key, key, page, ctx, now) for key, page, ctx in rows])
        conn.commit()
        return conn.total_changes - before


def delete_translation_keys(language_code: str, keys: Sequence[str]) -> int:
    """Delete the given keys of a language. Returns the number of rows deleted."""
    if not keys:
        return 0
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executemany("""
            DELETE FROM translations WHERE language_code = ? AND translation_key = ?
        """, [(language_code, key) for key in keys])
        conn.commit()
        return cursor.rowcount


def apply_master_import(source_language: str, new_entries: Dict[str, str],
                        updated_entries: Dict[str, str]) -> int:
    """
    Write master key changes in a single transaction.

    New source rows are inserted approved. Updated source texts flag the
    same key in every other language as needs_review.

    Returns:
        Number of target rows flagged for review.
    """
    conn = get_connection()
    cursor = conn.cursor()
    now = _now()
    flagged = 0

    try:
        for key, text in new_entries.items():
            cursor.execute("""
                INSERT INTO translations
                (language_code, translation_key, translated_text, approved, approved_at, updated_at)
                VALUES (?, ?, ?, 1, ?, ?)
            """, (source_language, key, text, now, now))

        for key, text in updated_entries.items():
            cursor.execute("""
                UPDATE translations SET translated_text = ?, updated_at = ?
                WHERE language_code = ? AND translation_key = ?
            """, (text, now, source_language, key))
            cursor.execute("""
                UPDATE translations SET review_status = 'needs_review', updated_at = ?
                WHERE translation_key = ? AND language_code != ?
            """, (now, key, source_language))
            flagged += cursor.rowcount

        conn.commit()
        return flagged
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


def get_untranslated_keys(language_code: str) -> List[str]:
    """Keys whose text is missing, blank, or still the placeholder (equal to the key)."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT translation_key FROM translations
            WHERE language_code = ?
              AND (translated_text IS NULL
                   OR TRIM(translated_text) = ''
                   OR translated_text = translation_key)
            ORDER BY translation_key
        """, (language_code,))
        return [row[0] for row in cursor.fetchall()]


def update_translated_text(language_code: str, translation_key: str, translated_text: str) -> bool:
    """
    Write back new text for a row. Changed text always needs re-approval,
    so approved is reset and approved_at cleared.
    """
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            UPDATE translations
            SET translated_text = ?, approved = 0, approved_at = NULL, updated_at = ?
            WHERE language_code = ? AND translation_key = ?
        """, (translated_text, _now(), language_code, translation_key))
        conn.commit()
        return cursor.rowcount > 0


def count_empty_unapproved(language_code: str, keys: Sequence[str] = None) -> int:
    """Count unapproved rows whose text is NULL or whitespace only."""
    query = """
        SELECT COUNT(*) FROM translations
        WHERE language_code = ? AND approved = 0
          AND (translated_text IS NULL OR TRIM(translated_text) = '')
    """
    params: List[Any] = [language_code]
    if keys is not None:
        if not keys:
            return 0
        query += f" AND translation_key IN ({_placeholders(keys)})"
        params.extend(keys)
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchone()[0]


def count_placeholder_unapproved(language_code: str, keys: Sequence[str] = None) -> int:
    """Count unapproved rows still holding the sync placeholder (text equal to the key)."""
    query = """
        SELECT COUNT(*) FROM translations
        WHERE language_code = ? AND approved = 0
          AND translated_text = translation_key
    """
    params: List[Any] = [language_code]
    if keys is not None:
        if not keys:
            return 0
        query += f" AND translation_key IN ({_placeholders(keys)})"
        params.extend(keys)
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        return cursor.fetchone()[0]


def approve_translations(language_code: str, keys: Sequence[str] = None,
                         approved_at: str = None) -> int:
    """Approve pending rows of a language (all, or only the given keys)."""
    query = """
        UPDATE translations SET approved = 1, approved_at = ?, updated_at = ?
        WHERE language_code = ? AND approved = 0
    """
    now = approved_at or _now()
    params: List[Any] = [now, now, language_code]
    if keys is not None:
        if not keys:
            return 0
        query += f" AND translation_key IN ({_placeholders(keys)})"
        params.extend(keys)
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(query, params)
        conn.commit()
        return cursor.rowcount


def unapprove_translation(language_code: str, translation_key: str) -> bool:
    """Revoke approval of one row."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            UPDATE translations SET approved = 0, approved_at = NULL, updated_at = ?
            WHERE language_code = ? AND translation_key = ? AND approved = 1
        """, (_now(), language_code, translation_key))
        conn.commit()
        return cursor.rowcount > 0


def approve_by_quality(language_codes: Sequence[str], threshold: float,
                       approved_at: str = None) -> Dict[str, int]:
    """Approve unapproved, non-empty, non-placeholder rows scoring at or above threshold."""
    now = approved_at or _now()
    counts: Dict[str, int] = {}
    with get_connection() as conn:
        cursor = conn.cursor()
        for code in language_codes:
            cursor.execute("""
                UPDATE translations SET approved = 1, approved_at = ?, updated_at = ?
                WHERE language_code = ? AND approved = 0
                  AND quality_score IS NOT NULL AND quality_score >= ?
                  AND TRIM(COALESCE(translated_text, '')) != ''
                  AND translated_text != translation_key
            """, (now, now, code, threshold))
            counts[code] = cursor.rowcount
        conn.commit()
    return counts


def flag_low_quality(language_codes: Sequence[str], threshold: float) -> Dict[str, int]:
    """Mark rows scoring below threshold as needs_review, per language."""
    counts: Dict[str, int] = {}
    with get_connection() as conn:
        cursor = conn.cursor()
        for code in language_codes:
            cursor.execute("""
                UPDATE translations SET review_status = 'needs_review', updated_at = ?
                WHERE language_code = ? AND quality_score IS NOT NULL AND quality_score < ?
                  AND review_status != 'needs_review'
            """, (_now(), code, threshold))
            counts[code] = cursor.rowcount
        conn.commit()
    return counts


def set_review_status(language_codes: Sequence[str], keys: Sequence[str], status: str) -> int:
    """Set review_status on the given keys across several languages."""
    if not keys or not language_codes:
        return 0
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute(f"""
            UPDATE translations SET review_status = ?, updated_at = ?
            WHERE language_code IN ({_placeholders(language_codes)})
              AND translation_key IN ({_placeholders(keys)})
        """, [status, _now(), *language_codes, *keys])
        conn.commit()
        return cursor.rowcount


def save_quality_scores(language_code: str, scores: Iterable[Dict[str, Any]]) -> int:
    """Persist per-key quality results ({key, score, metrics})."""
    now = _now()
    params = []
    for item in scores:
        metrics = item.get("metrics")
        params.append((
            item.get("score"),
            json.dumps(metrics, ensure_ascii=False) if metrics is not None else None,
            now,
            language_code,
            item["key"],
        ))
    if not params:
        return 0
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.executemany("""
            UPDATE translations SET quality_score = ?, quality_metrics = ?, updated_at = ?
            WHERE language_code = ? AND translation_key = ?
        """, params)
        conn.commit()
        return len(params)


def clear_quality_scores(language_code: str) -> int:
    """Drop quality scores and metrics for a language."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            UPDATE translations SET quality_score = NULL, quality_metrics = NULL, updated_at = ?
            WHERE language_code = ?
        """, (_now(), language_code))
        conn.commit()
        return cursor.rowcount


def get_quality_summary(language_code: str, high_threshold: float = 85,
                        low_threshold: float = 70, source_language: str = None) -> Dict[str, Any]:
    """
    Aggregate quality and review figures for one language.

    With source_language, ``approved`` and ``master_present`` only count keys
    that exist in the source language; rows outside the master set (orphans)
    still count towards ``total``.
    """
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute("""
            SELECT
                COUNT(*) AS total,
                SUM(in_master) AS master_present,
                SUM(CASE WHEN approved = 1 AND in_master = 1 THEN 1 ELSE 0 END) AS approved,
                AVG(quality_score) AS avg_quality,
                SUM(CASE WHEN quality_score >= ? THEN 1 ELSE 0 END) AS high_quality,
                SUM(CASE WHEN quality_score >= ? AND quality_score < ? THEN 1 ELSE 0 END) AS medium_quality,
                SUM(CASE WHEN quality_score < ? THEN 1 ELSE 0 END) AS low_quality,
                SUM(CASE WHEN review_status = 'needs_review' THEN 1 ELSE 0 END) AS needs_review,
                SUM(CASE WHEN translated_text IS NULL OR TRIM(translated_text) = ''
                         OR translated_text = translation_key THEN 1 ELSE 0 END) AS untranslated
            FROM (
                SELECT t.*,
                       CASE WHEN ? IS NULL OR t.translation_key IN (
                           SELECT translation_key FROM translations WHERE language_code = ?
                       ) THEN 1 ELSE 0 END AS in_master
                FROM translations t WHERE t.language_code = ?
            )
        """, (high_threshold, low_threshold, high_threshold, low_threshold,
              source_language, source_language, language_code))
        row = dict(cursor.fetchone())
        return {k: (v or 0) if k != "avg_quality" else v for k, v in row.items()}


# ============================================================
# Evaluation Progress Operations
# ============================================================

def get_progress(language_code: str) -> Optional[Dict[str, Any]]:
    """Get the evaluation checkpoint of a language."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        cursor.execute("SELECT * FROM evaluation_progress WHERE language_code = ?", (language_code,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_all_progress(status: str = None) -> List[Dict[str, Any]]:
    """Get every checkpoint row, optionally filtered by status."""
    with get_connection() as conn:
        conn.row_factory = sqlite3.Row
        cursor = conn.cursor()
        if status:
            cursor.execute("""
                SELECT * FROM evaluation_progress WHERE status = ? ORDER BY language_code
            """, (status,))
        else:
            cursor.execute("SELECT * FROM evaluation_progress ORDER BY language_code")
        return [dict(row) for row in cursor.fetchall()]


def ensure_progress(language_code: str) -> Dict[str, Any]:
    """Get the checkpoint row, creating an idle one if absent."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR IGNORE INTO evaluation_progress (language_code, status, updated_at)
            VALUES (?, 'idle', ?)
        """, (language_code, _now()))
        conn.commit()
    return get_progress(language_code)


def update_progress(language_code: str, **fields: Any) -> None:
    """Update checkpoint fields and refresh the heartbeat (updated_at)."""
    unknown = set(fields) - set(PROGRESS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown progress fields: {sorted(unknown)}")

    updates = [f"{name} = ?" for name in fields]
    params: List[Any] = list(fields.values())
    updates.append("updated_at = ?")
    params.append(_now())
    params.append(language_code)

    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR IGNORE INTO evaluation_progress (language_code, status, updated_at)
            VALUES (?, 'idle', ?)
        """, (language_code, _now()))
        cursor.execute(
            f"UPDATE evaluation_progress SET {', '.join(updates)} WHERE language_code = ?",
            params,
        )
        conn.commit()


def checkpoint_evaluation(language_code: str, evaluated_keys: int, last_evaluated_key: str,
                          total_keys: int = None) -> None:
    """
    Persist a sub-batch result: counts, watermark and heartbeat.

    Status is not written here, so a pause recorded by another
    process between two sub-batches is not overwritten.
    """
    fields: Dict[str, Any] = {"last_evaluated_key": last_evaluated_key}
    if total_keys is not None:
        fields["total_keys"] = total_keys
        evaluated_keys = min(evaluated_keys, total_keys) if total_keys > 0 else evaluated_keys
    fields["evaluated_keys"] = evaluated_keys
    update_progress(language_code, **fields)


def record_evaluation_error(language_code: str, message: str) -> None:
    """Move a checkpoint to error, bumping error_count."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR IGNORE INTO evaluation_progress (language_code, status, updated_at)
            VALUES (?, 'idle', ?)
        """, (language_code, _now()))
        cursor.execute("""
            UPDATE evaluation_progress
            SET status = 'error', error_count = error_count + 1,
                last_error = ?, error_message = ?, updated_at = ?
            WHERE language_code = ?
        """, (message, message, _now(), language_code))
        conn.commit()


def reset_progress(language_code: str) -> None:
    """Clear the checkpoint to a restartable idle state."""
    update_progress(
        language_code,
        status="idle",
        evaluated_keys=0,
        last_evaluated_key=None,
        error_count=0,
        last_error=None,
        error_message=None,
        completed_at=None,
    )


def delete_progress(language_code: str) -> bool:
    """Remove a checkpoint row entirely."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("DELETE FROM evaluation_progress WHERE language_code = ?", (language_code,))
        conn.commit()
        return cursor.rowcount > 0


# ============================================================
# App Config Operations
# ============================================================

def get_app_config(key: str) -> Optional[str]:
    """Get a configuration value by key."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("SELECT value FROM app_config WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row[0] if row else None


def set_app_config(key: str, value: str):
    """Set a configuration value."""
    with get_connection() as conn:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT OR REPLACE INTO app_config (key, value, updated_at)
            VALUES (?, ?, ?)
        """, (key, value, _now()))
        conn.commit()
