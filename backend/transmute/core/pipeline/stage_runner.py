"""
Stage Runner
============

Runs independent analysis stages concurrently with per-stage failure
isolation. Completed stages are skipped, failed stages get their
fallback, and every success is checkpointed as soon as it settles.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Union
from uuid import UUID

import structlog

from transmute.core.models import AgentEventType
from transmute.core.pipeline.checkpoint import CheckpointStore
from transmute.core.pipeline.errors import EventAppendError, StageFailure
from transmute.core.pipeline.events import EventSink
from transmute.core.pipeline.interfaces import AnalysisStage, get_fallback
from transmute.core.schemas import Checkpoint, ThoughtPayload

logger = structlog.get_logger()


# ==========================================================================
# Outcomes
# ==========================================================================

@dataclass
class Success:
    """Stage produced a result (from its fallback when degraded)."""
    result: dict[str, Any] = field(default_factory=dict)
    degraded: bool = False


@dataclass
class Failure:
    """Stage and its fallback both failed."""
    error: StageFailure


@dataclass
class Skipped:
    """Stage was already complete; result comes from the checkpoint."""
    result: dict[str, Any] = field(default_factory=dict)


StageOutcome = Union[Success, Failure, Skipped]


# ==========================================================================
# Reporter
# ==========================================================================

class StageReporter:
    """Emits thought events prefixed and tagged with a stage name."""

    def __init__(self, events: EventSink, project_id: UUID, stage_name: str):
        self.events = events
        self.project_id = project_id
        self.stage_name = stage_name
        self.label = stage_name.replace("_", " ").title()

    async def thought(self, message: str, **details: Any) -> None:
        await self.events.emit(
            self.project_id,
            AgentEventType.THOUGHT,
            f"[{self.label}] {message}",
            ThoughtPayload(category="Analysis", stage=self.stage_name, stats=details),
        )


# ==========================================================================
# Runner
# ==========================================================================

class StageRunner:
    """
    Runs analysis stages concurrently.

    A failing stage never cancels its siblings; `run_stages` returns an
    outcome for every stage instead of raising.
    """

    def __init__(self, checkpoints: CheckpointStore, events: EventSink):
        self.checkpoints = checkpoints
        self.events = events

    async def run_stages(
        self,
        project_id: UUID,
        stages: Sequence[AnalysisStage],
        checkpoint: Optional[Checkpoint] = None,
    ) -> dict[str, StageOutcome]:
        """
        Run every stage not yet complete in the checkpoint.

        Args:
            project_id: Project the stages belong to
            stages: Stages to run, each with a unique name
            checkpoint: Already loaded checkpoint, loaded here when omitted

        Returns:
            Outcome per stage name, in the order given
        """
        names = [stage.name for stage in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate stage names: {names}")

        if checkpoint is None:
            checkpoint = await self.checkpoints.load(project_id) or Checkpoint()

        outcomes: dict[str, StageOutcome] = {}
        pending: list[AnalysisStage] = []
        for stage in stages:
            if checkpoint.is_complete(stage.name):
                logger.info("Skipping completed stage", project_id=str(project_id), stage=stage.name)
                outcomes[stage.name] = Skipped(checkpoint.stage_results[stage.name])
            else:
                pending.append(stage)

        settled = await asyncio.gather(
            *(self._run_one(project_id, stage) for stage in pending),
            return_exceptions=True,
        )

        infrastructure_error: Optional[BaseException] = None
        for stage, outcome in zip(pending, settled):
            if isinstance(outcome, BaseException):
                # Checkpoint or event persistence failed, not the stage
                infrastructure_error = infrastructure_error or outcome
                continue
            outcomes[stage.name] = outcome

        if infrastructure_error is not None:
            raise infrastructure_error

        return {name: outcomes[name] for name in names}

    async def _run_one(self, project_id: UUID, stage: AnalysisStage) -> StageOutcome:
        reporter = StageReporter(self.events, project_id, stage.name)
        started = time.monotonic()
        log = logger.bind(project_id=str(project_id), stage=stage.name)

        try:
            result = await stage.run(reporter)
            outcome: StageOutcome = Success(self._as_result(result))
        except EventAppendError:
            raise
        except Exception as exc:
            log.warning("Stage failed", error=str(exc))
            outcome = await self._run_fallback(stage, reporter, exc)

        if isinstance(outcome, Success):
            await self.checkpoints.mark_stage_complete(project_id, stage.name, outcome.result)
            log.info(
                "Stage complete",
                degraded=outcome.degraded,
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        return outcome

    async def _run_fallback(
        self,
        stage: AnalysisStage,
        reporter: StageReporter,
        error: Exception,
    ) -> StageOutcome:
        fallback = get_fallback(stage)
        required = bool(getattr(stage, "required", False))
        if fallback is None:
            return Failure(StageFailure(stage.name, error, required=required))

        try:
            result = self._as_result(await fallback(reporter, error))
        except EventAppendError:
            raise
        except Exception as fallback_error:
            logger.warning("Stage fallback failed", stage=stage.name, error=str(fallback_error))
            return Failure(StageFailure(stage.name, error, required=required))
        return Success(result, degraded=True)

    @staticmethod
    def _as_result(result: Any) -> dict[str, Any]:
        if result is None:
            return {}
        if not isinstance(result, dict):
            raise TypeError(f"Stage result must be a dict, got {type(result).__name__}")
        return result
