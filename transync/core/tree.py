"""
Key tree building.

Rebuilds the nested locale resource consumed by the runtime from flat
dotted-key rows, e.g. ``{"nav.home": "Home"}`` -> ``{"nav": {"home": "Home"}}``.

A key can be both a leaf and a parent (``"a"`` and ``"a.b"``). Resolution is
first-writer-wins along the path:

- a leaf is not written over a non-empty nested object (children win);
- a branch is not created through an existing string (the string wins).

Rows are normally processed shallowest first, so parent leaves are
materialized before their children are considered.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional, Tuple

from transync.config import SOURCE_LANGUAGE
from transync.core import database as db
from transync.logger import get_logger

logger = get_logger(__name__)

SEPARATOR = "."


class KeyTreeBuilder:
    """
    Accumulates (key, text) pairs into a nested dict.

    Example:
        >>> builder = KeyTreeBuilder()
        >>> builder.add("a.b", "x")
        >>> builder.add("a", "y")
        >>> builder.tree
        {'a': {'b': 'x'}}
    """

    def __init__(self, separator: str = SEPARATOR):
        self.separator = separator
        self.tree: Dict[str, Any] = {}
        self.conflicts: List[str] = []

    def add(self, key: str, text: Optional[str]) -> bool:
        """
        Place one row into the tree.

        Returns:
            False if the row was skipped because of a parent/child conflict.
        """
        parts = key.split(self.separator)
        current = self.tree

        for index, part in enumerate(parts):
            if index == len(parts) - 1:
                existing = current.get(part)
                if isinstance(existing, dict) and existing:
                    logger.warning(f"Skipping conflicting key '{key}' - child keys already exist")
                    self.conflicts.append(key)
                    return False
                current[part] = text
                return True

            existing = current.get(part)
            if isinstance(existing, str):
                prefix = self.separator.join(parts[:index + 1])
                logger.warning(f"Key conflict: '{prefix}' is both a parent and value, skipping '{key}'")
                self.conflicts.append(key)
                return False
            if not isinstance(existing, dict):
                existing = {}
                current[part] = existing
            current = existing

        return True

    def build(self, rows: Iterable[Tuple[str, Optional[str]]], sort_by_depth: bool = True) -> Dict[str, Any]:
        """
        Add many rows and return the tree.

        Args:
            rows: (key, text) pairs.
            sort_by_depth: Process shallower keys first. The sort is stable, so
                rows of equal depth keep their given order.
        """
        items = list(rows)
        if sort_by_depth:
            items.sort(key=lambda item: len(item[0].split(self.separator)))
        for key, text in items:
            self.add(key, text)
        return self.tree


def build_tree(mapping: Dict[str, Optional[str]], sort_by_depth: bool = True) -> Dict[str, Any]:
    """Convenience wrapper over KeyTreeBuilder for a flat dict."""
    return KeyTreeBuilder().build(mapping.items(), sort_by_depth=sort_by_depth)


def load_language_tree(language_code: str, store=None,
                       source_language: str = SOURCE_LANGUAGE) -> Dict[str, Any]:
    """
    Build the runtime resource tree for a language.

    The source language serves every row; other languages serve approved rows only.
    """
    store = store or db
    rows = store.get_translations(language_code, approved_only=language_code != source_language)
    builder = KeyTreeBuilder()
    tree = builder.build((row["translation_key"], row["translated_text"]) for row in rows)
    logger.info(
        f"Loaded {len(rows)} translations for {language_code} "
        f"({len(builder.conflicts)} conflicting keys skipped)"
    )
    return tree
