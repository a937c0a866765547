"""
In-process fake collaborators and data factories for tests.
"""

import asyncio
import time
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.config import Settings
from transmute.core.models import Project, ProjectStatus, SliceStatus, VerticalSlice
from transmute.core.schemas import (
    CodeGenResult,
    CommandResult,
    Diagnosis,
    GeneratedFile,
    SlicePlan,
    TestGenResult,
)

PASSING_TESTS = " Test Files  1 passed (1)\n      Tests  8 passed (8)\n"
FAILING_TESTS = (
    " FAIL  src/auth/auth.test.ts > login > rejects a wrong password\n"
    "AssertionError: expected 401 to be 200\n"
    " Test Files  1 failed (1)\n"
    "      Tests  2 failed | 6 passed (8)\n"
)
BROKEN_BUILD = "src/auth/service.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'."


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from the environment, with fast polling."""
    values: dict[str, Any] = {
        "ENVIRONMENT": "test",
        "LIVE_VERIFICATION_ENABLED": False,
        "APP_READY_POLL_ATTEMPTS": 3,
        "APP_READY_POLL_INTERVAL_SECONDS": 0.0,
        "EVENT_PACING_SECONDS": 0.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


# ==========================================================================
# Collaborators
# ==========================================================================

class FakeSandbox:
    """Sandbox that answers commands from scripted outputs."""

    def __init__(
        self,
        config: Settings,
        build_outputs: Optional[list[str]] = None,
        test_outputs: Optional[list[str]] = None,
        default_build: str = "Build completed in 2.1s",
        default_tests: str = PASSING_TESTS,
        e2e_output: str = "  3 passed (4.2s)",
        ready: bool = True,
    ):
        self.config = config
        self.build_outputs = list(build_outputs or [])
        self.test_outputs = list(test_outputs or [])
        self.default_build = default_build
        self.default_tests = default_tests
        self.e2e_output = e2e_output
        self.ready = ready
        self.files: dict[str, str] = {}
        self.commands: list[str] = []

    async def write_files(self, workspace: str, files: list[GeneratedFile]) -> None:
        for file in files:
            self.files[file.path] = file.content

    async def run_command(self, workspace: str, command: str) -> CommandResult:
        self.commands.append(command)
        if command == self.config.BUILD_COMMAND:
            output = self.build_outputs.pop(0) if self.build_outputs else self.default_build
        elif command == self.config.TEST_COMMAND:
            output = self.test_outputs.pop(0) if self.test_outputs else self.default_tests
        elif command == self.config.APP_READY_COMMAND:
            output = "200" if self.ready else "000waiting"
        elif command == self.config.E2E_COMMAND:
            output = self.e2e_output
        elif command == self.config.TREE_COMMAND:
            output = "\n".join(sorted(self.files))
        else:
            output = ""
        return CommandResult(output=output)

    async def read_file(self, workspace: str, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def get_preview_url(self, workspace: str, port: int) -> str:
        return f"https://{workspace}.preview.test:{port}"

    def count(self, command: str) -> int:
        return self.commands.count(command)


class FakeCodeGen:
    """Code generator returning small fixed files per slice."""

    def __init__(self, crash_on: tuple[str, ...] = (), service_source: str = "export const version = 1\n"):
        self.crash_on = crash_on
        self.service_source = service_source
        self.previous_files_seen: dict[str, list[str]] = {}
        self.previous_contents: dict[str, dict[str, str]] = {}
        self.diagnose_inputs: list[tuple[str, list[GeneratedFile]]] = []

    @staticmethod
    def _slug(name: str) -> str:
        return name.lower().replace(" ", "-")

    async def generate_code(self, contract, context_tree, previous_files) -> CodeGenResult:
        if contract.name in self.crash_on:
            raise RuntimeError("code generation service unavailable")
        self.previous_files_seen[contract.name] = [f.path for f in previous_files]
        self.previous_contents[contract.name] = {f.path: f.content for f in previous_files}
        slug = self._slug(contract.name)
        return CodeGenResult(
            files=[
                GeneratedFile(path=f"src/{slug}/service.ts", content=self.service_source),
                GeneratedFile(path=f"src/{slug}/route.ts", content="export {}\n"),
            ],
            reasoning=[f"{contract.name} needs a service and a route."],
        )

    async def generate_tests(self, contract, files, context_tree) -> TestGenResult:
        slug = self._slug(contract.name)
        return TestGenResult(
            files=[GeneratedFile(path=f"src/{slug}/{slug}.test.ts", content="test('works', () => {})\n")]
        )

    async def diagnose(self, error_output, current_files, slice_name) -> Diagnosis:
        self.diagnose_inputs.append((error_output, list(current_files)))
        slug = self._slug(slice_name)
        return Diagnosis(
            diagnosis=f"{slice_name}: password comparison uses the raw value instead of the hash",
            fix_description="compare hashed values",
            files=[GeneratedFile(path=f"src/{slug}/service.ts", content="export const version = 2\n")],
        )


class RecordingStage:
    """Analysis stage that records its calls and timing."""

    def __init__(
        self,
        name: str,
        result: Optional[dict[str, Any]] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
        fail_times: Optional[int] = None,
        required: bool = False,
    ):
        self.name = name
        self.result = result or {"stage": name}
        self.delay = delay
        self.error = error
        self.fail_times = fail_times
        self.required = required
        self.calls = 0
        self.started_at: list[float] = []
        self.finished_at: list[float] = []

    async def run(self, reporter) -> dict[str, Any]:
        self.calls += 1
        self.started_at.append(time.monotonic())
        await reporter.thought(f"Analyzing (call {self.calls})")
        await asyncio.sleep(self.delay)
        self.finished_at.append(time.monotonic())
        if self.error is not None and (self.fail_times is None or self.calls <= self.fail_times):
            raise self.error
        return dict(self.result)


class StaticPlanner:
    """Planner returning fixed slice plans."""

    def __init__(self, plans: list[SlicePlan], error: Optional[Exception] = None):
        self.plans = plans
        self.error = error
        self.calls = 0

    async def plan(self, project, stage_results) -> list[SlicePlan]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.plans)


# ==========================================================================
# Data factories
# ==========================================================================

async def create_project(
    session_factory: async_sessionmaker[AsyncSession],
    name: str = "Legacy CRM",
    status: ProjectStatus = ProjectStatus.PENDING,
    **values: Any,
) -> Project:
    async with session_factory() as session:
        project = Project(name=name, status=status, **values)
        session.add(project)
        await session.commit()
        await session.refresh(project)
        return project


async def create_slice(
    session_factory: async_sessionmaker[AsyncSession],
    project_id: UUID,
    name: str,
    priority: int = 1,
    dependencies: Optional[list[UUID]] = None,
    status: SliceStatus = SliceStatus.PENDING,
    **values: Any,
) -> VerticalSlice:
    async with session_factory() as session:
        vertical_slice = VerticalSlice(
            project_id=project_id,
            name=name,
            priority=priority,
            status=status,
            dependencies=[str(dep) for dep in (dependencies or [])],
            **values,
        )
        session.add(vertical_slice)
        await session.commit()
        await session.refresh(vertical_slice)
        return vertical_slice


async def reload(session_factory: async_sessionmaker[AsyncSession], model: Any, row_id: Any) -> Any:
    async with session_factory() as session:
        return await session.get(model, row_id)
