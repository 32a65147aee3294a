"""
Master key set synchronization module.

This module keeps every target language aligned with the source language's
key set (the master key set):
- Creating placeholder rows for keys a language is missing
- Pruning rows whose key no longer exists in the master set
- Importing the master set itself from a nested JSON locale file
"""

import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from transync.config import SOURCE_LANGUAGE
from transync.core import database as db
from transync.logger import get_logger

logger = get_logger(__name__)


@dataclass
class LanguageSyncResult:
    """Outcome of syncing one language."""
    language_code: str
    inserted: int = 0
    removed: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SyncReport:
    """Per-language outcomes of a synchronization run."""
    results: List[LanguageSyncResult] = field(default_factory=list)
    master_key_count: int = 0

    @property
    def total_inserted(self) -> int:
        return sum(r.inserted for r in self.results)

    @property
    def total_removed(self) -> int:
        return sum(r.removed for r in self.results)

    @property
    def failed_languages(self) -> List[str]:
        return [r.language_code for r in self.results if not r.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master_key_count": self.master_key_count,
            "total_inserted": self.total_inserted,
            "total_removed": self.total_removed,
            "failed_languages": self.failed_languages,
            "languages": [
                {"language_code": r.language_code, "inserted": r.inserted,
                 "removed": r.removed, "error": r.error}
                for r in self.results
            ],
        }


class MasterImportResult:
    """Container for master file import results."""

    def __init__(self):
        self.new_keys: List[str] = []
        self.updated_keys: List[str] = []
        self.unchanged_keys: int = 0
        self.skipped_keys: List[str] = []  # non-string values
        self.flagged_rows: int = 0  # target rows marked needs_review

    def to_dict(self) -> Dict[str, Any]:
        return {
            "new": len(self.new_keys),
            "updated": len(self.updated_keys),
            "unchanged": self.unchanged_keys,
            "skipped": len(self.skipped_keys),
            "flagged_for_review": self.flagged_rows,
        }

    def __str__(self):
        return (f"MasterImportResult(new={len(self.new_keys)}, "
                f"updated={len(self.updated_keys)}, "
                f"unchanged={self.unchanged_keys}, "
                f"flagged={self.flagged_rows})")


def flatten_json(data: Dict[str, Any], parent_key: str = '', separator: str = '.') -> Dict[str, Any]:
    """
    Flatten a nested JSON structure into a flat dictionary.

    Args:
        data: The nested dictionary to flatten
        parent_key: The parent key for recursion
        separator: The separator to use between keys

    Returns:
        A flat dictionary of dotted keys to leaf values. Array items get
        their index as a key segment.

    Example:
        Input: {"nav": {"home": "Home"}, "tags": ["a", "b"]}
        Output: {"nav.home": "Home", "tags.0": "a", "tags.1": "b"}
    """
    items = []

    for key, value in data.items():
        new_key = f"{parent_key}{separator}{key}" if parent_key else key

        if isinstance(value, dict):
            items.extend(flatten_json(value, new_key, separator).items())
        elif isinstance(value, list):
            for i, item in enumerate(value):
                if isinstance(item, dict):
                    items.extend(flatten_json(item, f"{new_key}{separator}{i}", separator).items())
                else:
                    items.append((f"{new_key}{separator}{i}", item))
        else:
            items.append((new_key, value))

    return dict(items)


def load_master_file(file_path: Path) -> Dict[str, Any]:
    """
    Load and flatten a source language JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        json.JSONDecodeError: If the file is not valid JSON
        ValueError: If the top level is not an object
    """
    logger.info(f"Loading master file: {file_path}")

    if not file_path.exists():
        raise FileNotFoundError(f"Master file not found: {file_path}")

    with open(file_path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Master file must contain a JSON object, got {type(data).__name__}")

    flattened = flatten_json(data)
    logger.info(f"Loaded {len(flattened)} items from master file")
    return flattened


class KeySynchronizer:
    """
    Aligns target languages with the master key set.

    Args:
        store: Persistence backend (defaults to the database module).
        source_language: Code of the language owning the master key set.
    """

    def __init__(self, store=None, source_language: str = SOURCE_LANGUAGE):
        self.store = store or db
        self.source_language = source_language

    def _target_languages(self, language_codes: Optional[Sequence[str]]) -> List[str]:
        enabled = [lang["code"] for lang in self.store.get_languages(enabled_only=True)
                   if lang["code"] != self.source_language]
        if language_codes is None:
            return enabled
        requested = [code for code in language_codes if code != self.source_language]
        unknown = set(requested) - set(enabled)
        if unknown:
            logger.warning(f"Ignoring unknown or disabled languages: {sorted(unknown)}")
        return [code for code in requested if code in enabled]

    def sync_missing_keys(self, language_codes: Optional[Sequence[str]] = None) -> SyncReport:
        """
        Create placeholder rows (text = key, unapproved) for every master key a
        language lacks, copying page_location and context from the source row.

        Re-running after a successful sync inserts nothing. A failure in one
        language is recorded on its result and does not stop the others.
        """
        master_rows = {row["translation_key"]: row
                       for row in self.store.get_translations(self.source_language)}
        report = SyncReport(master_key_count=len(master_rows))
        logger.info(f"Syncing {len(master_rows)} master keys")

        for code in self._target_languages(language_codes):
            result = LanguageSyncResult(language_code=code)
            try:
                existing = self.store.get_translation_keys(code)
                missing = sorted(set(master_rows) - existing)
                if missing:
                    result.inserted = self.store.insert_placeholders(code, [
                        (key, master_rows[key].get("page_location"), master_rows[key].get("context"))
                        for key in missing
                    ])
                logger.info(f"{code}: {len(missing)} missing keys, {result.inserted} placeholders inserted")
            except sqlite3.Error as e:
                result.error = str(e)
                logger.error(f"{code}: failed to insert placeholders: {e}")
            report.results.append(result)

        logger.info(
            f"Sync complete: {report.total_inserted} rows inserted, "
            f"{len(report.failed_languages)} languages failed"
        )
        return report

    def prune_orphan_keys(self, language_codes: Optional[Sequence[str]] = None) -> SyncReport:
        """Delete target rows whose key is no longer in the master key set."""
        master_keys = self.store.get_translation_keys(self.source_language)
        report = SyncReport(master_key_count=len(master_keys))

        for code in self._target_languages(language_codes):
            result = LanguageSyncResult(language_code=code)
            try:
                orphans = sorted(self.store.get_translation_keys(code) - master_keys)
                if orphans:
                    result.removed = self.store.delete_translation_keys(code, orphans)
                    logger.info(f"{code}: removed {result.removed} orphan keys")
            except sqlite3.Error as e:
                result.error = str(e)
                logger.error(f"{code}: failed to prune orphan keys: {e}")
            report.results.append(result)

        return report

    def import_master_file(self, file_path: Path) -> MasterImportResult:
        """
        Seed or update the master key set from a nested JSON locale file.

        Only string values become keys. When a source text changes, the
        corresponding rows of every other language are flagged needs_review.
        All changes are applied in one transaction.
        """
        flattened = load_master_file(Path(file_path))
        result = MasterImportResult()
        existing = {row["translation_key"]: row
                    for row in self.store.get_translations(self.source_language)}

        entries = {}
        for key, value in flattened.items():
            if not isinstance(value, str):
                result.skipped_keys.append(key)
                continue
            entries[key] = value
            if key not in existing:
                result.new_keys.append(key)
            elif existing[key].get("translated_text") != value:
                result.updated_keys.append(key)
            else:
                result.unchanged_keys += 1

        logger.info(f"Master import analysis complete: {result}")
        result.flagged_rows = self.store.apply_master_import(
            self.source_language,
            {key: entries[key] for key in result.new_keys},
            {key: entries[key] for key in result.updated_keys},
        )
        logger.info("Master import changes applied successfully")
        return result
