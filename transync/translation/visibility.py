"""
Language switcher visibility derived from approval completeness.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List

from transync.config import PipelineSettings
from transync.core import database as db
from transync.logger import get_logger

logger = get_logger(__name__)


@dataclass
class VisibilityDecision:
    language_code: str
    approved: int
    master_keys: int
    approval_rate: float
    visible: bool
    changed: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class VisibilitySync:
    """Sets show_in_switcher for every enabled language from its approval rate."""

    def __init__(self, store=None, settings: PipelineSettings = None):
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()

    def sync_visibility(self) -> List[VisibilityDecision]:
        source = self.settings.source_language
        master_keys = self.store.count_translations(source)
        decisions = []

        for language in self.store.get_languages(enabled_only=True):
            code = language["code"]
            approved = self.store.count_approved(code, source)
            rate = approved / master_keys if master_keys else 0.0
            if code == source:
                visible = True
            else:
                visible = master_keys > 0 and rate >= self.settings.visibility_threshold

            changed = self.store.set_language_visibility(code, visible)
            decisions.append(VisibilityDecision(
                language_code=code,
                approved=approved,
                master_keys=master_keys,
                approval_rate=round(rate, 4),
                visible=visible,
                changed=changed,
            ))
            if changed:
                logger.info(f"{code}: show_in_switcher -> {visible} ({rate:.1%} approved)")

        return decisions

    def set_visibility(self, language_code: str, visible: bool) -> bool:
        """Manual override. The next sync_visibility run derives it again."""
        if self.store.get_language(language_code) is None:
            raise KeyError(language_code)
        changed = self.store.set_language_visibility(language_code, visible)
        logger.info(f"{language_code}: show_in_switcher manually set to {visible}")
        return changed
