"""
Translation module - Pipeline orchestration

This module provides:
- EvaluationOrchestrator: Resumable, checkpointed quality evaluation
- TranslationBatchDispatcher: Bulk fill and batched refinement
- StuckJobDetector: Watchdog over evaluation checkpoints
- ApprovalGate: Approval policies
- VisibilitySync: Language switcher visibility
- EvaluationProgress / PipelineProgress: Progress dataclasses
"""

from transync.translation.progress import EvaluationProgress, PipelineProgress
from transync.translation.evaluator import (
    EvaluationOrchestrator,
    EvaluationOutcome,
    EvaluationRunReport,
    pause_evaluation,
    reset_evaluation,
    restart_evaluation,
)
from transync.translation.dispatcher import TranslationBatchDispatcher, RefineFilter
from transync.translation.watchdog import StuckJobDetector
from transync.translation.approval import ApprovalGate
from transync.translation.visibility import VisibilitySync
