"""
Project Pipeline API Routes.

REST endpoints to create projects, drive the pipeline and read its
checkpoint and event stream.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Query, status

from transmute.api.deps import CurrentProject, Orchestrator
from transmute.core.schemas import (
    Checkpoint,
    EventListResponse,
    ProcessResult,
    ProjectConfigure,
    ProjectCreate,
    ProjectResponse,
    SliceResponse,
)

router = APIRouter(prefix="/projects", tags=["projects"])


# ==========================================================================
# Projects
# ==========================================================================

@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(data: ProjectCreate, orchestrator: Orchestrator):
    """Create a migration project."""
    return await orchestrator.create_project(
        name=data.name,
        source_url=data.source_url,
        metadata=data.project_metadata,
    )


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(project: CurrentProject):
    """Get project status, step, confidence and error context."""
    return project


@router.get("/{project_id}/slices", response_model=list[SliceResponse])
async def list_slices(project: CurrentProject, orchestrator: Orchestrator):
    """List vertical slices in build order."""
    return await orchestrator.list_slices(project.id)


# ==========================================================================
# Pipeline control
# ==========================================================================

@router.post("/{project_id}/process", response_model=ProcessResult)
async def process_project(
    project: CurrentProject,
    orchestrator: Orchestrator,
    background_tasks: BackgroundTasks,
    wait: bool = Query(True, description="Run to the next stopping point before responding"),
):
    """
    Advance the project pipeline.

    With `wait=false` processing continues after the response is sent;
    follow progress through the events endpoint.
    """
    if not wait:
        background_tasks.add_task(orchestrator.process, project.id)
        return ProcessResult(success=True, message="Processing started", status=project.status)
    return await orchestrator.process(project.id)


@router.post("/{project_id}/configure", response_model=ProcessResult)
async def configure_project(
    data: ProjectConfigure,
    project: CurrentProject,
    orchestrator: Orchestrator,
):
    """Store preferences and continue past analysis."""
    return await orchestrator.configure(project.id, data.preferences)


@router.post("/{project_id}/pause", response_model=ProcessResult)
async def pause_project(project: CurrentProject, orchestrator: Orchestrator):
    """Pause at the next checkpoint."""
    return await orchestrator.pause(project.id)


@router.post("/{project_id}/resume", response_model=ProcessResult)
async def resume_project(project: CurrentProject, orchestrator: Orchestrator):
    """Resume a paused or failed project from its checkpoint."""
    return await orchestrator.resume(project.id)


@router.post("/{project_id}/retry", response_model=ProcessResult)
async def retry_project(project: CurrentProject, orchestrator: Orchestrator):
    """Reset failed slices and run again."""
    return await orchestrator.retry(project.id)


@router.post("/{project_id}/slices/{slice_id}/retry", response_model=ProcessResult)
async def retry_slice(slice_id: UUID, project: CurrentProject, orchestrator: Orchestrator):
    """Reset one failed slice and continue building."""
    return await orchestrator.retry_slice(project.id, slice_id)


# ==========================================================================
# Pipeline state
# ==========================================================================

@router.get("/{project_id}/checkpoint", response_model=Checkpoint)
async def get_checkpoint(project: CurrentProject, orchestrator: Orchestrator):
    """Completed steps and their results."""
    return await orchestrator.checkpoints.load(project.id) or Checkpoint()


@router.get("/{project_id}/events", response_model=EventListResponse)
async def list_events(
    project: CurrentProject,
    orchestrator: Orchestrator,
    cursor: int = Query(0, ge=0, description="Last event id already seen"),
    limit: int = Query(100, ge=1, le=1000),
    slice_id: Optional[UUID] = None,
):
    """Events after `cursor`, oldest first."""
    items = await orchestrator.events.stream_since(
        project.id, cursor=cursor, limit=limit, slice_id=slice_id
    )
    return EventListResponse(
        items=items,
        next_cursor=items[-1].id if items else cursor,
    )
