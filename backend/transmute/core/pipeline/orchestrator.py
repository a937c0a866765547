"""
Pipeline Orchestrator - Main execution engine.

Drives a project through analysis, planning and slice building, resuming
from its checkpoint on every invocation.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.config import Settings, settings as default_settings
from transmute.core.models import (
    AgentEventType,
    Project,
    ProjectStatus,
    SliceStatus,
    VerticalSlice,
)
from transmute.core.pipeline.build_loop import SelfHealingBuildLoop
from transmute.core.pipeline.checkpoint import PLANNING_STEP, CheckpointStore, slice_step
from transmute.core.pipeline.confidence import ScoreTarget
from transmute.core.pipeline.errors import (
    CheckpointCorruption,
    DependencyNotSatisfied,
    EventAppendError,
    InvalidTransition,
    ProjectNotFound,
    SliceNotFound,
    TransmuteError,
)
from transmute.core.pipeline.events import EventSink
from transmute.core.pipeline.interfaces import (
    AnalysisStage,
    CodeGenService,
    PlanningService,
    SandboxExecutor,
    SliceCompleteHook,
)
from transmute.core.pipeline.planning import FeatureMapPlanner
from transmute.core.pipeline.stage_runner import Failure, StageRunner
from transmute.core.schemas import Checkpoint, ErrorContext, ProcessResult, SlicePlan, ThoughtPayload

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """
    Main pipeline execution engine.

    Moves a project through:
    PENDING → PROCESSING → ANALYZED → READY → BUILDING → COMPLETE

    Features:
    - Concurrent analysis stages with per-stage failure isolation
    - Checkpointed progress; completed work is never redone
    - Designed pause at ANALYZED until the project is configured
    - Self-healing slice builds in dependency and priority order
    - Pause, resume and retry at any point
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stages: Sequence[AnalysisStage] = (),
        planner: Optional[PlanningService] = None,
        codegen: Optional[CodeGenService] = None,
        sandbox: Optional[SandboxExecutor] = None,
        on_slice_complete: Optional[SliceCompleteHook] = None,
        config: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.config = config or default_settings
        self.stages = list(stages)
        self.planner = planner or FeatureMapPlanner()

        self.events = EventSink(session_factory, config=self.config)
        self.aggregator = self.events.aggregator
        self.checkpoints = CheckpointStore(session_factory, self.events)
        self.stage_runner = StageRunner(self.checkpoints, self.events)
        self.build_loop = SelfHealingBuildLoop(
            session_factory,
            self.events,
            self.checkpoints,
            codegen=codegen,
            sandbox=sandbox,
            on_complete=on_slice_complete,
            config=self.config,
        )
        self._project_locks: dict[UUID, asyncio.Lock] = {}

    # ======================================================================
    # Project lifecycle
    # ======================================================================

    async def create_project(
        self,
        name: str,
        source_url: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Project:
        """
        Create a new migration project.

        Args:
            name: Human-readable project name
            source_url: Repository of the legacy application
            metadata: Initial project metadata

        Returns:
            Created Project instance
        """
        async with self._session_factory() as session:
            project = Project(
                name=name,
                source_url=source_url,
                status=ProjectStatus.PENDING,
                project_metadata=dict(metadata or {}),
            )
            session.add(project)
            await session.commit()
            await session.refresh(project)

        logger.info(f"Created project {project.id} ({name})")
        return project

    async def process(self, project_id: UUID) -> ProcessResult:
        """
        Advance a project as far as it can go.

        Safe to call repeatedly: completed stages, planning and slices
        are restored from the checkpoint instead of being redone.

        Args:
            project_id: Project to process

        Returns:
            ProcessResult describing where the project stopped

        Raises:
            ProjectNotFound: Unknown project
            CheckpointCorruption: Stored checkpoint is inconsistent
        """
        async with self._project_lock(project_id):
            project = await self.get_project(project_id)
            if project.status == ProjectStatus.PAUSED:
                logger.info(f"Project {project_id} paused, exiting")
                return ProcessResult(success=True, message="Paused", status=ProjectStatus.PAUSED)
            if project.status == ProjectStatus.COMPLETE:
                return ProcessResult(success=True, message="Project complete", status=ProjectStatus.COMPLETE)

            try:
                checkpoint = await self.checkpoints.load(project_id) or Checkpoint()
                return await self._process(project, checkpoint)
            except CheckpointCorruption as e:
                logger.error(f"Checkpoint corrupted for project {project_id}: {e}")
                await self._fail(project_id, "checkpoint", str(e), retryable=False, details=e.metadata)
                raise
            except Exception as e:
                logger.exception(f"Processing failed for project {project_id}")
                current = await self.get_project(project_id)
                retryable = e.retryable if isinstance(e, TransmuteError) else True
                await self._fail(
                    project_id,
                    current.pipeline_step or "init",
                    str(e),
                    retryable=retryable,
                    details={"error_type": type(e).__name__},
                    announce=not isinstance(e, EventAppendError),
                )
                return ProcessResult(success=False, message=str(e), status=ProjectStatus.FAILED)

    async def _process(self, project: Project, checkpoint: Checkpoint) -> ProcessResult:
        project_id = project.id
        status_at_start = project.status

        # --- Analysis stages ---
        pending = [stage for stage in self.stages if not checkpoint.is_complete(stage.name)]
        if pending:
            await self._advance(project_id, ProjectStatus.PROCESSING)
            outcomes = await self.stage_runner.run_stages(project_id, self.stages, checkpoint)

            failures = [o.error for o in outcomes.values() if isinstance(o, Failure)]
            for failure in failures:
                await self._record_error(
                    project_id, failure.stage, str(failure), retryable=True, details=failure.metadata
                )
                await self._thought(
                    project_id,
                    f"{failure.stage} failed: {failure.cause}",
                    pipeline_event="stage_failed",
                    step=failure.stage,
                )

            if not failures:
                await self._update_project(project_id, error_context=None)

            required = [f for f in failures if f.required]
            if required:
                await self._update_project(project_id, status=ProjectStatus.FAILED)
                names = ", ".join(f.stage for f in required)
                return ProcessResult(
                    success=False,
                    message=f"Required analysis failed: {names}",
                    status=ProjectStatus.FAILED,
                )

            checkpoint = await self.checkpoints.load(project_id) or Checkpoint()

        if await self._is_paused(project_id):
            return ProcessResult(success=True, message="Paused", status=ProjectStatus.PAUSED)

        stage_results = {
            stage.name: checkpoint.stage_results[stage.name]
            for stage in self.stages
            if checkpoint.is_complete(stage.name)
        }
        if stage_results:
            await self._merge_metadata(project_id, stage_results)

        # --- Designed pause for configuration ---
        project = await self.get_project(project_id)
        if not checkpoint.is_complete(PLANNING_STEP) and project.configured_at is None:
            await self._advance(project_id, ProjectStatus.ANALYZED)
            await self._thought(project_id, "Analysis complete. Awaiting configuration...")
            return ProcessResult(
                success=True,
                message="Analysis complete - awaiting configuration",
                status=ProjectStatus.ANALYZED,
            )

        # --- Planning ---
        if not checkpoint.is_complete(PLANNING_STEP):
            await self._plan(project, stage_results)
        else:
            await self._thought(project_id, "Planning step restored from checkpoint.")

        await self._advance(project_id, ProjectStatus.READY)

        if not (
            self.config.AUTO_START_BUILD
            or status_at_start in (ProjectStatus.READY, ProjectStatus.BUILDING)
        ):
            return ProcessResult(success=True, message="Project ready", status=ProjectStatus.READY)

        return await self._build_slices(project_id)

    # ======================================================================
    # Planning
    # ======================================================================

    async def _plan(self, project: Project, stage_results: dict[str, dict[str, Any]]) -> None:
        project_id = project.id
        await self._update_project(project_id, pipeline_step=PLANNING_STEP)
        await self._thought(project_id, "Generating vertical slices...")

        planner_input = {
            key: value
            for key, value in (project.project_metadata or {}).items()
            if isinstance(value, dict)
        }
        planner_input.update(stage_results)

        plans: list[SlicePlan] = []
        try:
            plans = list(await self.planner.plan(project, planner_input))
        except Exception as e:
            logger.warning(f"Planner failed for project {project_id}: {e}")
            await self._thought(project_id, f"Planner error: {e}")

        # Keep previously planned slices when planning produced nothing
        if plans:
            await self._replace_slices(project_id, plans)

        await self._thought(
            project_id,
            f"Project ready! Generated {len(plans)} vertical slice{'s' if len(plans) != 1 else ''}.",
        )
        await self.checkpoints.mark_stage_complete(
            project_id, PLANNING_STEP, {"slices": [plan.name for plan in plans]}
        )

    async def _replace_slices(self, project_id: UUID, plans: list[SlicePlan]) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(VerticalSlice).where(VerticalSlice.project_id == project_id))

            rows = [
                VerticalSlice(
                    project_id=project_id,
                    name=plan.name,
                    description=plan.description,
                    priority=plan.priority if plan.priority else index + 1,
                    status=SliceStatus.PENDING,
                    dependencies=[],
                    behavioral_contract=plan.behavioral_contract or None,
                    code_contract=plan.code_contract or None,
                )
                for index, plan in enumerate(plans)
            ]
            session.add_all(rows)
            await session.flush()

            # Map dependency names to slice ids; unknown names are dropped
            name_to_id = {row.name: str(row.id) for row in rows}
            for row, plan in zip(rows, plans):
                row.dependencies = [
                    name_to_id[name]
                    for name in plan.dependencies
                    if name in name_to_id and name != plan.name
                ]
            await session.commit()

        logger.info(f"Planned {len(plans)} slices for project {project_id}")

    # ======================================================================
    # Building
    # ======================================================================

    async def _build_slices(self, project_id: UUID) -> ProcessResult:
        await self._advance(project_id, ProjectStatus.BUILDING)

        while True:
            if await self._is_paused(project_id):
                return ProcessResult(success=True, message="Paused", status=ProjectStatus.PAUSED)

            slices = await self.list_slices(project_id)
            complete_ids = {str(s.id) for s in slices if s.status == SliceStatus.COMPLETE}

            if len(complete_ids) == len(slices):
                return await self._finish(project_id, slices)

            failed = [s for s in slices if s.status == SliceStatus.FAILED]
            if failed:
                names = ", ".join(s.name for s in failed)
                await self._fail(
                    project_id,
                    slice_step(failed[0].id),
                    f"Slice build failed: {names}",
                    retryable=True,
                    details={"failed_slices": [str(s.id) for s in failed]},
                )
                return ProcessResult(
                    success=False,
                    message=f"Slice build failed: {names}",
                    status=ProjectStatus.FAILED,
                )

            ready = [
                s for s in slices
                if s.status != SliceStatus.COMPLETE and s.dependency_ids <= complete_ids
            ]
            if not ready:
                blocked = [s.name for s in slices if s.status != SliceStatus.COMPLETE]
                await self._fail(
                    project_id,
                    "building",
                    f"No slice can be built; unresolved dependencies for: {', '.join(blocked)}",
                    retryable=False,
                    details={"blocked_slices": blocked},
                )
                return ProcessResult(
                    success=False,
                    message="Slice dependencies cannot be satisfied",
                    status=ProjectStatus.FAILED,
                )

            batch = ready[: max(1, self.config.MAX_CONCURRENT_SLICE_BUILDS)]
            async with asyncio.TaskGroup() as group:
                for vertical_slice in batch:
                    group.create_task(self._build_one(project_id, vertical_slice))

    async def _build_one(self, project_id: UUID, vertical_slice: VerticalSlice) -> None:
        """Build one slice; a crash marks the slice failed instead of escaping."""
        if await self._is_paused(project_id):
            return

        try:
            await self.build_loop.build(vertical_slice)
        except DependencyNotSatisfied as e:
            logger.info(f"Slice {vertical_slice.name} not ready: {e}")
        except Exception as e:
            logger.exception(f"Build of slice {vertical_slice.name} crashed")
            await self._update_slice(vertical_slice.id, status=SliceStatus.FAILED)
            await self._record_error(
                project_id,
                slice_step(vertical_slice.id),
                f"Build of {vertical_slice.name} crashed: {e}",
                retryable=e.retryable if isinstance(e, TransmuteError) else True,
                details={"error_type": type(e).__name__},
            )

    async def _finish(self, project_id: UUID, slices: list[VerticalSlice]) -> ProcessResult:
        if slices:
            average = sum(s.confidence_score for s in slices) / len(slices)
            await self.aggregator.set_score(ScoreTarget(project_id), average)

        await self._update_project(
            project_id,
            status=ProjectStatus.COMPLETE,
            current_slice_id=None,
            error_context=None,
        )
        await self._thought(project_id, f"All {len(slices)} slices complete.", pipeline_event="project_complete")
        logger.info(f"Project {project_id} complete")
        return ProcessResult(success=True, message="Project complete", status=ProjectStatus.COMPLETE)

    # ======================================================================
    # Control operations
    # ======================================================================

    async def configure(self, project_id: UUID, preferences: dict[str, Any]) -> ProcessResult:
        """Store user preferences, release the analyzed pause and continue."""
        project = await self.get_project(project_id)
        if project.status in (ProjectStatus.PAUSED, ProjectStatus.BUILDING, ProjectStatus.COMPLETE):
            raise InvalidTransition(f"Cannot configure a {project.status.value} project")

        await self._update_project(
            project_id,
            preferences=dict(preferences),
            configured_at=datetime.now(timezone.utc),
        )
        logger.info(f"Project {project_id} configured")
        return await self.process(project_id)

    async def pause(self, project_id: UUID) -> ProcessResult:
        """Stop the project at the next pause check."""
        project = await self.get_project(project_id)
        if project.status in (ProjectStatus.COMPLETE, ProjectStatus.FAILED):
            raise InvalidTransition(f"Cannot pause a {project.status.value} project")

        await self._update_project(project_id, status=ProjectStatus.PAUSED)
        await self._thought(project_id, "Pipeline paused.", pipeline_event="paused")
        return ProcessResult(success=True, message="Paused", status=ProjectStatus.PAUSED)

    async def can_resume(self, project_id: UUID) -> bool:
        project = await self.get_project(project_id)
        if project.status not in (ProjectStatus.PAUSED, ProjectStatus.FAILED):
            return False
        checkpoint = await self.checkpoints.load(project_id)
        return checkpoint is not None and not checkpoint.is_empty

    async def resume(self, project_id: UUID) -> ProcessResult:
        """Continue a paused or failed project from its checkpoint."""
        if not await self.can_resume(project_id):
            raise InvalidTransition("Project has no checkpoint to resume from")

        await self._update_project(
            project_id,
            status=await self._continue_status(project_id),
            error_context=None,
        )
        await self._thought(project_id, "Resuming from checkpoint.", pipeline_event="resumed")
        return await self.process(project_id)

    async def retry(self, project_id: UUID) -> ProcessResult:
        """Reset failed slices and run the pipeline again."""
        project = await self.get_project(project_id)
        if project.status not in (ProjectStatus.FAILED, ProjectStatus.PAUSED):
            raise InvalidTransition(f"Cannot retry a {project.status.value} project")

        async with self._session_factory() as session:
            await session.execute(
                update(VerticalSlice)
                .where(
                    VerticalSlice.project_id == project_id,
                    VerticalSlice.status == SliceStatus.FAILED,
                )
                .values(status=SliceStatus.PENDING, retry_count=0, confidence_score=0.0)
            )
            await session.commit()

        await self._update_project(
            project_id,
            status=await self._continue_status(project_id),
            error_context=None,
        )
        await self._thought(project_id, "Retrying pipeline.", pipeline_event="retry")
        return await self.process(project_id)

    async def retry_slice(self, project_id: UUID, slice_id: UUID) -> ProcessResult:
        """Reset one failed slice and continue building."""
        async with self._session_factory() as session:
            vertical_slice = await session.get(VerticalSlice, slice_id)
            if vertical_slice is None or vertical_slice.project_id != project_id:
                raise SliceNotFound(f"Slice {slice_id} not found")
            if vertical_slice.status != SliceStatus.FAILED:
                raise InvalidTransition(f"Slice {vertical_slice.name} is {vertical_slice.status.value}")
            vertical_slice.status = SliceStatus.PENDING
            vertical_slice.retry_count = 0
            vertical_slice.confidence_score = 0.0
            await session.commit()

        project = await self.get_project(project_id)
        if project.status == ProjectStatus.FAILED:
            await self._update_project(project_id, status=ProjectStatus.BUILDING, error_context=None)
        return await self.process(project_id)

    # ======================================================================
    # Queries
    # ======================================================================

    async def get_project(self, project_id: UUID) -> Project:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return project

    async def list_slices(self, project_id: UUID) -> list[VerticalSlice]:
        async with self._session_factory() as session:
            rows = await session.scalars(
                select(VerticalSlice)
                .where(VerticalSlice.project_id == project_id)
                .order_by(VerticalSlice.priority, VerticalSlice.created_at, VerticalSlice.name)
            )
            return list(rows.all())

    # ======================================================================
    # Helpers
    # ======================================================================

    def _project_lock(self, project_id: UUID) -> asyncio.Lock:
        return self._project_locks.setdefault(project_id, asyncio.Lock())

    async def _continue_status(self, project_id: UUID) -> ProjectStatus:
        planned = await self.checkpoints.is_stage_complete(project_id, PLANNING_STEP)
        return ProjectStatus.BUILDING if planned else ProjectStatus.PROCESSING

    async def _is_paused(self, project_id: UUID) -> bool:
        async with self._session_factory() as session:
            status = await session.scalar(select(Project.status).where(Project.id == project_id))
        return status == ProjectStatus.PAUSED

    async def _merge_metadata(self, project_id: UUID, values: dict[str, Any]) -> None:
        async with self._session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(f"Project {project_id} not found")
            project.project_metadata = {**(project.project_metadata or {}), **values}
            await session.commit()

    async def _record_error(
        self,
        project_id: UUID,
        step: str,
        message: str,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        context = ErrorContext(
            step=step,
            message=message,
            timestamp=datetime.now(timezone.utc),
            retryable=retryable,
            details=details or {},
        )
        await self._update_project(project_id, error_context=context.model_dump(mode="json"))

    async def _fail(
        self,
        project_id: UUID,
        step: str,
        message: str,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
        announce: bool = True,
    ) -> None:
        await self._record_error(project_id, step, message, retryable, details)
        await self._update_project(project_id, status=ProjectStatus.FAILED)
        if announce:
            await self._thought(project_id, f"Pipeline failed at {step}: {message}", pipeline_event="failed", step=step)
        logger.warning(f"Project {project_id} failed at {step}: {message}")

    async def _thought(self, project_id: UUID, message: str, **payload: Any) -> None:
        await self.events.emit(
            project_id,
            AgentEventType.THOUGHT,
            message,
            ThoughtPayload(category="Pipeline", **payload),
        )

    async def _advance(self, project_id: UUID, status: ProjectStatus) -> None:
        """Move to a pipeline status unless the project was paused meanwhile."""
        async with self._session_factory() as session:
            await session.execute(
                update(Project)
                .where(Project.id == project_id, Project.status != ProjectStatus.PAUSED)
                .values(status=status)
            )
            await session.commit()

    async def _update_project(self, project_id: UUID, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(update(Project).where(Project.id == project_id).values(**values))
            await session.commit()

    async def _update_slice(self, slice_id: UUID, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(VerticalSlice).where(VerticalSlice.id == slice_id).values(**values)
            )
            await session.commit()
