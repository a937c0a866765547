"""
Transmute - Migration Pipeline
==============================

Analysis stages, checkpoints, the agent event log and the self-healing
slice build loop, driven by the PipelineOrchestrator.
"""

from transmute.core.pipeline.build_loop import BuildContext, Completed, Failed, SelfHealingBuildLoop
from transmute.core.pipeline.checkpoint import PLANNING_STEP, CheckpointStore, slice_step
from transmute.core.pipeline.confidence import (
    ConfidenceAggregator,
    ConfidenceSummary,
    ScoreTarget,
    calculate_confidence,
    clamp_score,
)
from transmute.core.pipeline.events import EventSink
from transmute.core.pipeline.orchestrator import PipelineOrchestrator
from transmute.core.pipeline.stage_runner import Failure, Skipped, StageReporter, StageRunner, Success
from transmute.core.pipeline.stages import FunctionStage

__all__ = [
    "BuildContext",
    "CheckpointStore",
    "Completed",
    "ConfidenceAggregator",
    "ConfidenceSummary",
    "EventSink",
    "Failed",
    "Failure",
    "FunctionStage",
    "PLANNING_STEP",
    "PipelineOrchestrator",
    "ScoreTarget",
    "SelfHealingBuildLoop",
    "Skipped",
    "StageReporter",
    "StageRunner",
    "Success",
    "calculate_confidence",
    "clamp_score",
    "slice_step",
]
