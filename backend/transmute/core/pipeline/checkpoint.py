"""
Pipeline Checkpoints
====================

Durable record of completed pipeline steps so an interrupted project
resumes without redoing work. Each step is its own row, written with a
per-key upsert, so concurrent stages never overwrite each other.
"""

import asyncio
import logging
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.models import AgentEventType, PipelineCheckpoint, Project
from transmute.core.pipeline.errors import CheckpointCorruption, ProjectNotFound
from transmute.core.schemas import Checkpoint, ThoughtPayload

logger = logging.getLogger(__name__)

PLANNING_STEP = "planning"


def slice_step(slice_id: UUID | str) -> str:
    """Checkpoint step name of a built slice."""
    return f"slice:{slice_id}"


class CheckpointStore:
    """
    Reads and writes pipeline checkpoints.

    Usage:
        store = CheckpointStore(session_factory, events)
        await store.mark_stage_complete(project_id, "code_analysis", {...})
        checkpoint = await store.load(project_id)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: Optional[Any] = None,
    ):
        self._session_factory = session_factory
        self.events = events
        self._lock = asyncio.Lock()

    async def load(self, project_id: UUID) -> Optional[Checkpoint]:
        """
        Load the checkpoint of a project.

        Returns:
            Checkpoint, or None when no step has completed yet

        Raises:
            CheckpointCorruption: A step has no object result or appears twice
        """
        async with self._session_factory() as session:
            rows = (
                await session.scalars(
                    select(PipelineCheckpoint)
                    .where(PipelineCheckpoint.project_id == project_id)
                    .order_by(PipelineCheckpoint.id)
                )
            ).all()

        if not rows:
            return None

        checkpoint = Checkpoint()
        for row in rows:
            if row.step_name in checkpoint.stage_results:
                raise CheckpointCorruption(
                    f"Step '{row.step_name}' recorded twice",
                    metadata={"project_id": str(project_id), "step": row.step_name},
                )
            if not isinstance(row.result, dict):
                raise CheckpointCorruption(
                    f"Step '{row.step_name}' has no result",
                    metadata={"project_id": str(project_id), "step": row.step_name},
                )
            checkpoint.completed_steps.append(row.step_name)
            checkpoint.stage_results[row.step_name] = row.result
            if checkpoint.last_updated is None or row.completed_at > checkpoint.last_updated:
                checkpoint.last_updated = row.completed_at

        return checkpoint

    async def mark_stage_complete(
        self,
        project_id: UUID,
        step: str,
        result: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Record a step as complete with its result.

        Re-marking a step replaces its result but keeps its original
        position in the completion order.
        """
        if result is not None and not isinstance(result, dict):
            raise TypeError(f"Checkpoint result for '{step}' must be a dict")
        stored = dict(result or {})

        async with self._lock:
            async with self._session_factory() as session:
                project = await session.get(Project, project_id)
                if project is None:
                    raise ProjectNotFound(f"Project {project_id} not found")

                row = await session.scalar(
                    select(PipelineCheckpoint).where(
                        PipelineCheckpoint.project_id == project_id,
                        PipelineCheckpoint.step_name == step,
                    )
                )
                if row is None:
                    session.add(
                        PipelineCheckpoint(project_id=project_id, step_name=step, result=stored)
                    )
                else:
                    row.result = stored

                project.pipeline_step = step
                await session.commit()

        logger.info(f"Checkpoint saved for project {project_id}: {step}")

        if self.events is not None:
            await self.events.emit(
                project_id,
                AgentEventType.THOUGHT,
                f"Checkpoint saved: {step}",
                ThoughtPayload(category="Pipeline", pipeline_event="checkpoint", step=step),
            )

    async def is_stage_complete(self, project_id: UUID, step: str) -> bool:
        async with self._session_factory() as session:
            found = await session.scalar(
                select(PipelineCheckpoint.id).where(
                    PipelineCheckpoint.project_id == project_id,
                    PipelineCheckpoint.step_name == step,
                )
            )
        return found is not None

    async def clear(self, project_id: UUID) -> None:
        """Reset all pipeline state of a project for a fresh run."""
        async with self._lock:
            async with self._session_factory() as session:
                await session.execute(
                    delete(PipelineCheckpoint).where(PipelineCheckpoint.project_id == project_id)
                )
                project = await session.get(Project, project_id)
                if project is not None:
                    project.pipeline_step = None
                    project.error_context = None
                    project.current_slice_id = None
                await session.commit()

        logger.info(f"Checkpoint cleared for project {project_id}")
