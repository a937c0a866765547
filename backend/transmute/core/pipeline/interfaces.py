"""
Collaborator Interfaces
=======================

Protocols for the services the pipeline drives but does not implement:
code generation, the sandbox, analysis stages and slice planning.
"""

from typing import Any, Optional, Protocol, runtime_checkable
from uuid import UUID

from transmute.core.schemas import (
    CodeGenResult,
    CommandResult,
    Diagnosis,
    GeneratedFile,
    SliceContract,
    SlicePlan,
    TestGenResult,
)


class Reporter(Protocol):
    """Narrates progress of a unit of work into the event log."""

    async def thought(self, message: str, **details: Any) -> None: ...


@runtime_checkable
class CodeGenService(Protocol):
    """Generates source, tests and fixes for a slice."""

    async def generate_code(
        self,
        contract: SliceContract,
        context_tree: str,
        previous_files: list[GeneratedFile],
    ) -> CodeGenResult: ...

    async def generate_tests(
        self,
        contract: SliceContract,
        files: list[GeneratedFile],
        context_tree: str,
    ) -> TestGenResult: ...

    async def diagnose(
        self,
        error_output: str,
        current_files: list[GeneratedFile],
        slice_name: str,
    ) -> Diagnosis: ...


@runtime_checkable
class SandboxExecutor(Protocol):
    """Isolated workspace where generated code is written and run."""

    async def write_files(self, workspace: str, files: list[GeneratedFile]) -> None: ...

    async def run_command(self, workspace: str, command: str) -> CommandResult: ...

    async def read_file(self, workspace: str, path: str) -> str: ...

    async def get_preview_url(self, workspace: str, port: int) -> str: ...


@runtime_checkable
class AnalysisStage(Protocol):
    """
    Independent unit of analysis work.

    Stages may define `fallback(reporter, error)`; if present it is tried
    when `run` raises, and a result from it counts as degraded success.
    """

    name: str
    required: bool

    async def run(self, reporter: Reporter) -> dict[str, Any]: ...


class PlanningService(Protocol):
    """Turns analysis results into vertical slices."""

    async def plan(self, project: Any, stage_results: dict[str, dict[str, Any]]) -> list[SlicePlan]: ...


class SliceCompleteHook(Protocol):
    """Called once a slice reaches `complete`."""

    async def __call__(self, project_id: UUID, slice_id: UUID, outcome: Any) -> None: ...


def get_fallback(stage: Any) -> Optional[Any]:
    """Return the stage's fallback coroutine function, if it has one."""
    fallback = getattr(stage, "fallback", None)
    return fallback if callable(fallback) else None
