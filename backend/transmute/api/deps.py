"""
Transmute - API Dependencies
============================

Shared dependencies for FastAPI endpoints.
"""

from typing import Annotated
from uuid import UUID

from fastapi import Depends, Request

from transmute.core.models import Project
from transmute.core.pipeline import PipelineOrchestrator


def get_orchestrator(request: Request) -> PipelineOrchestrator:
    """The orchestrator built by the app factory."""
    return request.app.state.orchestrator


Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]


async def get_project(project_id: UUID, orchestrator: Orchestrator) -> Project:
    """
    Load the project named in the path.

    Raises:
        ProjectNotFound: mapped to 404 by the app's exception handlers
    """
    return await orchestrator.get_project(project_id)


CurrentProject = Annotated[Project, Depends(get_project)]
