"""
Export of translation rows and runtime locale files.

- export_language: flat JSON dump for offline inspection
- write_locale_file: nested resource tree as served to the runtime
"""

import json
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Union

from transync.config import SOURCE_LANGUAGE
from transync.core import database as db
from transync.core.tree import load_language_tree
from transync.core.validation import IncompleteTranslationError
from transync.logger import get_logger

logger = get_logger(__name__)


class FileGenerationError(Exception):
    """File generation error."""
    pass


def export_language(language_code: str, store=None) -> List[Dict[str, Any]]:
    """
    Dump every row of a language.

    Returns:
        List of {key, text, page, context, quality_score, review_status, approved},
        ordered by key.
    """
    store = store or db
    return [
        {
            "key": row["translation_key"],
            "text": row["translated_text"],
            "page": row.get("page_location"),
            "context": row.get("context"),
            "quality_score": row.get("quality_score"),
            "review_status": row.get("review_status"),
            "approved": bool(row.get("approved")),
        }
        for row in store.get_translations(language_code)
    ]


def _atomic_write_json(file_path: Path, data: Union[Dict[str, Any], List[Any]]):
    """
    Write JSON to file atomically.

    Writes to a temporary file in the target directory, then renames it over
    the target, so the file is never left partially written.

    Raises:
        FileGenerationError: If write fails
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(
        dir=file_path.parent,
        prefix=f".{file_path.stem}_",
        suffix=".json.tmp"
    )
    temp_path = Path(temp_path)

    try:
        with open(temp_fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
            f.write('\n')

        temp_path.replace(file_path)
        logger.debug(f"Atomic write successful: {file_path}")

    except (OSError, TypeError, ValueError) as e:
        if temp_path.exists():
            temp_path.unlink()
        raise FileGenerationError(f"Atomic write failed: {e}") from e


def ensure_complete(language_code: str, store=None, source_language: str = SOURCE_LANGUAGE):
    """Raise IncompleteTranslationError if a master key has no approved row in the language."""
    store = store or db
    if language_code == source_language:
        return
    approved = {row["translation_key"] for row in store.get_translations(language_code, approved_only=True)}
    missing = sorted(store.get_translation_keys(source_language) - approved)
    if missing:
        raise IncompleteTranslationError(
            f"{language_code} has {len(missing)} keys without an approved translation",
            missing_keys=missing,
        )


def write_export(language_code: str, output_path: Path, store=None) -> int:
    """Write the export dump of a language. Returns the number of rows written."""
    rows = export_language(language_code, store)
    _atomic_write_json(Path(output_path), rows)
    logger.info(f"Exported {len(rows)} {language_code} rows to {output_path}")
    return len(rows)


def write_locale_file(language_code: str, output_path: Path, store=None,
                      require_complete: bool = False,
                      source_language: str = SOURCE_LANGUAGE) -> Dict[str, Any]:
    """
    Write the runtime resource tree of a language.

    Args:
        require_complete: Refuse (IncompleteTranslationError) when any master
            key has no approved row in this language.

    Returns:
        The tree that was written.
    """
    store = store or db
    if require_complete:
        ensure_complete(language_code, store, source_language)

    tree = load_language_tree(language_code, store=store, source_language=source_language)
    _atomic_write_json(Path(output_path), tree)
    logger.info(f"Wrote {language_code} locale file to {output_path}")
    return tree
