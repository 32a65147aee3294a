"""
Approval policies.

Bulk and selective approval refuse outright while any affected unapproved
row has empty text, or in a target language still holds the placeholder
(text equal to the key), and report how many rows block them. Quality-based
auto-approval promotes high-scoring rows and flags low-scoring ones for
review without touching their approval.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger

logger = get_logger(__name__)


@dataclass
class ApprovalResult:
    language_code: str
    approved: int = 0
    refused: bool = False
    blocking_empty: int = 0
    blocking_placeholders: int = 0
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AutoApproveReport:
    approved: Dict[str, int] = field(default_factory=dict)
    flagged_for_review: Dict[str, int] = field(default_factory=dict)

    @property
    def total_approved(self) -> int:
        return sum(self.approved.values())

    @property
    def total_flagged(self) -> int:
        return sum(self.flagged_for_review.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_approved": self.total_approved,
            "total_flagged": self.total_flagged,
            "approved": self.approved,
            "flagged_for_review": self.flagged_for_review,
        }


class ApprovalGate:
    """Applies approval policy to translation rows."""

    def __init__(self, store=None, settings: PipelineSettings = None):
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()

    def _approve(self, language_code: str, keys: Optional[Sequence[str]]) -> ApprovalResult:
        result = ApprovalResult(language_code=language_code)
        result.blocking_empty = self.store.count_empty_unapproved(language_code, keys)
        if language_code != self.settings.source_language:
            result.blocking_placeholders = self.store.count_placeholder_unapproved(language_code, keys)

        if result.blocking_empty or result.blocking_placeholders:
            reasons = []
            if result.blocking_empty:
                reasons.append(f"{result.blocking_empty} unapproved translations are empty")
            if result.blocking_placeholders:
                reasons.append(f"{result.blocking_placeholders} still hold placeholder text")
            result.refused = True
            result.message = f"Cannot approve: {' and '.join(reasons)}. Fill them before approving."
            logger.warning(
                f"{language_code}: approval refused, {result.blocking_empty} empty rows, "
                f"{result.blocking_placeholders} placeholder rows"
            )
            return result

        approved_at = datetime.now(timezone.utc).isoformat()
        result.approved = self.store.approve_translations(language_code, keys, approved_at=approved_at)
        result.message = f"Approved {result.approved} translations"
        logger.info(f"{language_code}: approved {result.approved} translations")
        return result

    def approve_all(self, language_code: str) -> ApprovalResult:
        """Approve every pending row of a language, unless an empty or placeholder row blocks it."""
        return self._approve(language_code, None)

    def approve_keys(self, language_code: str, keys: Sequence[str]) -> ApprovalResult:
        """Approve selected rows; refused if any selected pending row is empty or a placeholder."""
        return self._approve(language_code, list(keys))

    def unapprove(self, language_code: str, key: str) -> bool:
        changed = self.store.unapprove_translation(language_code, key)
        if changed:
            logger.info(f"{language_code}: approval revoked for '{key}'")
        return changed

    def auto_approve_quality(self, language_codes: Optional[Sequence[str]] = None) -> AutoApproveReport:
        """
        Approve rows scoring at or above the auto-approve threshold and flag
        rows below the review threshold as needs_review. The source language
        is never touched.
        """
        source = self.settings.source_language
        if language_codes is None:
            language_codes = [lang["code"] for lang in self.store.get_languages(enabled_only=True)]
        codes: List[str] = [code for code in language_codes if code != source]

        approved_at = datetime.now(timezone.utc).isoformat()
        report = AutoApproveReport(
            approved=self.store.approve_by_quality(codes, self.settings.auto_approve_threshold,
                                                   approved_at=approved_at),
            flagged_for_review=self.store.flag_low_quality(codes, self.settings.needs_review_threshold),
        )
        logger.info(
            f"Auto-approve: {report.total_approved} approved (score >= "
            f"{self.settings.auto_approve_threshold}), {report.total_flagged} flagged for review "
            f"(score < {self.settings.needs_review_threshold})"
        )
        return report

    def update_text(self, language_code: str, key: str, text: str) -> bool:
        """Manual edit; the row goes back to unapproved."""
        return self.store.update_translated_text(language_code, key, text)
