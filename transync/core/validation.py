"""
Translation statistics and health checks.

Per-language figures for dashboards (approval, quality buckets, review
backlog, evaluation state) and a key-set health report (missing keys,
untouched placeholders, orphans).
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger

logger = get_logger(__name__)


class IncompleteTranslationError(Exception):
    """Raised when a locale file is requested for a language with unapproved keys."""

    def __init__(self, message: str, missing_keys: List[str] = None):
        super().__init__(message)
        self.missing_keys = missing_keys or []


@dataclass
class LanguageStats:
    """Statistics for a language's translation status."""
    language_code: str
    language_name: str
    master_keys: int
    actual_translations: int
    missing: int
    untranslated: int
    approved: int
    approval_percentage: float
    avg_quality: Optional[float]
    high_quality: int
    medium_quality: int
    low_quality: int
    needs_review: int
    evaluation_status: str
    show_in_switcher: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def __str__(self):
        return (f"{self.language_name} ({self.language_code}): "
                f"{self.approved}/{self.master_keys} approved "
                f"({self.approval_percentage:.1f}%), {self.missing} missing")


@dataclass
class LanguageHealth:
    language_code: str
    missing_keys: List[str]
    placeholder_keys: List[str]
    orphan_keys: List[str]

    @property
    def healthy(self) -> bool:
        return not (self.missing_keys or self.placeholder_keys or self.orphan_keys)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "language_code": self.language_code,
            "healthy": self.healthy,
            "missing": len(self.missing_keys),
            "placeholders": len(self.placeholder_keys),
            "orphans": len(self.orphan_keys),
            "missing_keys": self.missing_keys,
            "placeholder_keys": self.placeholder_keys,
            "orphan_keys": self.orphan_keys,
        }


def get_language_stats(language_code: str, store=None, settings: PipelineSettings = None) -> LanguageStats:
    """
    Compute dashboard statistics for one language.

    Raises:
        KeyError: If the language does not exist.
    """
    store = store or db
    settings = settings or PipelineSettings.from_config()

    language = store.get_language(language_code)
    if language is None:
        raise KeyError(language_code)

    master_keys = store.count_translations(settings.source_language)
    summary = store.get_quality_summary(
        language_code,
        high_threshold=settings.auto_approve_threshold,
        low_threshold=settings.needs_review_threshold,
        source_language=settings.source_language,
    )
    progress = store.get_progress(language_code) or {}
    actual = summary["total"]
    avg_quality = summary["avg_quality"]

    return LanguageStats(
        language_code=language_code,
        language_name=language["name"],
        master_keys=master_keys,
        actual_translations=actual,
        missing=max(master_keys - summary["master_present"], 0),
        untranslated=summary["untranslated"],
        approved=summary["approved"],
        approval_percentage=round(summary["approved"] / master_keys * 100, 1) if master_keys else 0.0,
        avg_quality=round(avg_quality, 1) if avg_quality is not None else None,
        high_quality=summary["high_quality"],
        medium_quality=summary["medium_quality"],
        low_quality=summary["low_quality"],
        needs_review=summary["needs_review"],
        evaluation_status=progress.get("status", "idle"),
        show_in_switcher=language["show_in_switcher"],
    )


def get_all_language_stats(store=None, settings: PipelineSettings = None) -> List[LanguageStats]:
    store = store or db
    settings = settings or PipelineSettings.from_config()
    return [get_language_stats(lang["code"], store, settings) for lang in store.get_languages()]


def get_health_report(store=None, settings: PipelineSettings = None) -> List[LanguageHealth]:
    """Key-set health of every enabled target language against the master set."""
    store = store or db
    settings = settings or PipelineSettings.from_config()
    master_keys = store.get_translation_keys(settings.source_language)

    report = []
    for language in store.get_languages(enabled_only=True):
        code = language["code"]
        if code == settings.source_language:
            continue
        keys = store.get_translation_keys(code)
        placeholders = [
            row["translation_key"] for row in store.get_translations(code)
            if row["translated_text"] == row["translation_key"]
        ]
        health = LanguageHealth(
            language_code=code,
            missing_keys=sorted(master_keys - keys),
            placeholder_keys=placeholders,
            orphan_keys=sorted(keys - master_keys),
        )
        if not health.healthy:
            logger.info(
                f"{code}: {len(health.missing_keys)} missing, "
                f"{len(health.placeholder_keys)} placeholders, {len(health.orphan_keys)} orphans"
            )
        report.append(health)
    return report
