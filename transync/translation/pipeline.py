"""
Full pipeline run: sync, fill, evaluate, auto-approve, visibility.

PipelineRunner chains the individual stages in order and records one step
entry per stage. A quota error while filling skips evaluation, since the
service would refuse it as well; the local approval and visibility stages
still run. Cancellation is checked between stages and inside the fill and
evaluate stages.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from transync.config import PipelineSettings
from transync.core import database as db
from transync.core.sync import KeySynchronizer
from transync.logger import get_logger
from transync.translation.approval import ApprovalGate
from transync.translation.dispatcher import TranslationBatchDispatcher
from transync.translation.evaluator import EvaluationOrchestrator
from transync.translation.progress import PipelineProgress
from transync.translation.visibility import VisibilitySync

logger = get_logger(__name__)

STEP_SYNC = "sync"
STEP_FILL = "fill"
STEP_EVALUATE = "evaluate"
STEP_APPROVE = "approve"
STEP_VISIBILITY = "visibility"

PIPELINE_STEPS = (STEP_SYNC, STEP_FILL, STEP_EVALUATE, STEP_APPROVE, STEP_VISIBILITY)


@dataclass
class PipelineStep:
    name: str
    status: str = "pending"  # pending|completed|skipped
    reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status != "completed" or bool((self.result or {}).get("success", True))


@dataclass
class PipelineReport:
    steps: List[PipelineStep] = field(
        default_factory=lambda: [PipelineStep(name) for name in PIPELINE_STEPS]
    )
    cancelled: bool = False

    def step(self, name: str) -> PipelineStep:
        return next(s for s in self.steps if s.name == name)

    @property
    def success(self) -> bool:
        return all(s.succeeded for s in self.steps)

    @property
    def message(self) -> str:
        done = [s.name for s in self.steps if s.status == "completed"]
        message = f"Steps completed: {', '.join(done) or 'none'}"
        skipped = [f"{s.name} ({s.reason})" for s in self.steps if s.status == "skipped"]
        if skipped:
            message += f"; skipped: {', '.join(skipped)}"
        return message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "cancelled": self.cancelled,
            "steps": [asdict(s) for s in self.steps],
        }


class PipelineRunner:
    """
    Runs the whole translation workflow for a set of target languages.

    The service client is shared by the fill and evaluate stages; the
    database module is the default store for every stage.
    """

    def __init__(self, client, store=None, settings: PipelineSettings = None, sleep=None):
        self.client = client
        self.store = store or db
        self.settings = settings or PipelineSettings.from_config()
        self.sleep = sleep

    def _announce(self, progress_callback, index: int, name: str, total_languages: int):
        logger.info(f"Pipeline step {index + 1}/{len(PIPELINE_STEPS)}: {name}")
        if progress_callback:
            progress_callback(PipelineProgress(
                current_language="",
                total_languages=total_languages,
                completed_languages=0,
                message=f"Step {index + 1}/{len(PIPELINE_STEPS)}: {name}",
            ))

    async def run(
        self,
        language_codes: Optional[Sequence[str]] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
        progress_callback: Optional[Callable[[PipelineProgress], Any]] = None,
        reevaluate_all: bool = False,
    ) -> PipelineReport:
        report = PipelineReport()
        codes = None if language_codes is None else list(language_codes)
        total = len(codes) if codes is not None else 0
        skip_reason: Dict[str, str] = {}

        for index, name in enumerate(PIPELINE_STEPS):
            step = report.step(name)
            if cancel_check and cancel_check():
                report.cancelled = True
                step.status = "skipped"
                step.reason = "cancelled"
                continue
            if name in skip_reason:
                step.status = "skipped"
                step.reason = skip_reason[name]
                logger.warning(f"Pipeline step {name} skipped: {step.reason}")
                continue

            self._announce(progress_callback, index, name, total)

            if name == STEP_SYNC:
                synchronizer = KeySynchronizer(store=self.store, source_language=self.settings.source_language)
                step.result = synchronizer.sync_missing_keys(codes).to_dict()
            elif name == STEP_FILL:
                dispatcher = TranslationBatchDispatcher(
                    self.client, store=self.store, settings=self.settings, sleep=self.sleep,
                )
                fill = await dispatcher.fill_missing(codes, cancel_check, progress_callback)
                step.result = fill.to_dict()
                if fill.quota_exceeded:
                    skip_reason[STEP_EVALUATE] = "translation service quota exceeded"
            elif name == STEP_EVALUATE:
                orchestrator = EvaluationOrchestrator(
                    self.client, store=self.store, settings=self.settings, sleep=self.sleep,
                )
                evaluation = await orchestrator.evaluate_languages(
                    codes,
                    reevaluate_all=reevaluate_all,
                    cancel_check=cancel_check,
                    progress_callback=progress_callback,
                )
                step.result = evaluation.to_dict()
            elif name == STEP_APPROVE:
                gate = ApprovalGate(store=self.store, settings=self.settings)
                step.result = gate.auto_approve_quality(codes).to_dict()
            else:
                visibility = VisibilitySync(store=self.store, settings=self.settings)
                step.result = {"languages": [d.to_dict() for d in visibility.sync_visibility()]}

            step.status = "completed"

        logger.info(f"Pipeline finished: {report.message}")
        return report
