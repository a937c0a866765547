"""
Self-Healing Build Loop
=======================

Builds one vertical slice: generate code, build, generate and run tests,
then diagnose and fix failures a bounded number of times.

Slice states:
    pending -> selected -> building -> testing -> complete
                                          |
                                          v
                              self_healing -> testing (bounded) -> complete | failed

Every step is narrated as agent events; confidence moves only through
event deltas and the final adjustment.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Union
from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from transmute.core.config import Settings, settings as default_settings
from transmute.core.models import AgentEventType, Project, SliceStatus, VerticalSlice
from transmute.core.pipeline.checkpoint import CheckpointStore, slice_step
from transmute.core.pipeline.confidence import ConfidenceSummary, ScoreTarget, calculate_confidence
from transmute.core.pipeline.errors import (
    BuildFailure,
    DependencyNotSatisfied,
    HealExhausted,
    ProjectNotFound,
    SliceNotFound,
    TestFailure,
    TransmuteError,
)
from transmute.core.pipeline.events import EventSink
from transmute.core.pipeline.interfaces import CodeGenService, SandboxExecutor, SliceCompleteHook
from transmute.core.pipeline.strategies import ExecutionStrategy, select_strategy
from transmute.core.pipeline.test_output import SuiteCounts
from transmute.core.pipeline.verification import LiveVerifier, VerificationResult
from transmute.core.schemas import (
    CodeWritePayload,
    ConfidenceUpdatePayload,
    GeneratedFile,
    ObservationPayload,
    SelfHealPayload,
    SliceContract,
    TestResultPayload,
    TestRunPayload,
    ThoughtPayload,
    ToolCallPayload,
)

logger = structlog.get_logger()


# ==========================================================================
# Outcomes
# ==========================================================================

@dataclass
class Completed:
    """Slice reached `complete` with this confidence."""
    confidence: float


@dataclass
class Failed:
    """Slice ended `failed`."""
    reason: HealExhausted


BuildOutcome = Union[Completed, Failed]


# ==========================================================================
# Per-build state
# ==========================================================================

@dataclass
class BuildContext:
    """State of one build, passed through every step of the loop."""
    project_id: UUID
    slice_id: UUID
    slice_name: str
    workspace: str
    strategy: ExecutionStrategy
    contract: SliceContract
    retry_count: int = 0
    started: float = field(default_factory=time.monotonic)
    context_tree: str = ""
    files: list[GeneratedFile] = field(default_factory=list)
    lines_written: int = 0
    build_ok: bool = False
    unit: SuiteCounts = field(default_factory=SuiteCounts)
    tests_run: int = 0
    tests_passed: int = 0
    heal_count: int = 0
    needs_healing: bool = False
    last_output: str = ""

    def merge_files(self, updates: list[GeneratedFile]) -> None:
        """Replace files by path, appending new ones."""
        index = {f.path: i for i, f in enumerate(self.files)}
        for update_file in updates:
            if update_file.path in index:
                self.files[index[update_file.path]] = update_file
            else:
                index[update_file.path] = len(self.files)
                self.files.append(update_file)

    @property
    def elapsed(self) -> float:
        return round(time.monotonic() - self.started, 1)


# ==========================================================================
# Build loop
# ==========================================================================

class SelfHealingBuildLoop:
    """
    Builds vertical slices.

    Only one build of a given slice runs at a time; a second request
    waits and then finds the slice already complete.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        events: EventSink,
        checkpoints: CheckpointStore,
        codegen: Optional[CodeGenService] = None,
        sandbox: Optional[SandboxExecutor] = None,
        on_complete: Optional[SliceCompleteHook] = None,
        config: Optional[Settings] = None,
    ):
        self._session_factory = session_factory
        self.events = events
        self.checkpoints = checkpoints
        self.codegen = codegen
        self.sandbox = sandbox
        self.on_complete = on_complete
        self.config = config or default_settings
        self._slice_locks: dict[UUID, asyncio.Lock] = {}

    def slice_lock(self, slice_id: UUID) -> asyncio.Lock:
        return self._slice_locks.setdefault(slice_id, asyncio.Lock())

    async def build(
        self,
        vertical_slice: VerticalSlice,
        contract: Optional[SliceContract] = None,
    ) -> BuildOutcome:
        """
        Build a slice through test and self-heal to completion or failure.

        Args:
            vertical_slice: Slice to build
            contract: Contract to build against, derived from the slice if omitted

        Returns:
            Completed or Failed

        Raises:
            DependencyNotSatisfied: A dependency is not complete yet
        """
        async with self.slice_lock(vertical_slice.id):
            return await self._build(vertical_slice.id, contract)

    async def _build(self, slice_id: UUID, contract: Optional[SliceContract]) -> BuildOutcome:
        current, project = await self._load(slice_id)

        if current.status == SliceStatus.COMPLETE:
            return Completed(current.confidence_score)

        await self._check_dependencies(current)

        strategy = select_strategy(
            self.config.EXECUTION_MODE,
            self.codegen,
            self.sandbox,
            project.workspace_id,
            self.config,
        )
        ctx = BuildContext(
            project_id=current.project_id,
            slice_id=current.id,
            slice_name=current.name,
            workspace=project.workspace_id,
            strategy=strategy,
            contract=contract or SliceContract.from_slice(current),
            retry_count=current.retry_count,
        )
        log = logger.bind(project_id=str(ctx.project_id), slice=ctx.slice_name, strategy=strategy.name)
        log.info("Slice build started")

        await self._update_slice(ctx.slice_id, status=SliceStatus.SELECTED)
        await self._update_project(ctx.project_id, current_slice_id=ctx.slice_id)

        await self._generate_code(ctx)
        await self._check_build(ctx)
        await self._run_initial_tests(ctx)
        await self._heal(ctx)

        if ctx.needs_healing:
            return await self._fail(ctx)

        verification = VerificationResult()
        if (
            self.config.LIVE_VERIFICATION_ENABLED
            and strategy.supports_live_verification
            and self.sandbox is not None
        ):
            verifier = LiveVerifier(self.sandbox, ctx.workspace, self.events, self.config)
            verification = await verifier.verify(ctx.project_id, ctx.slice_id, ctx.slice_name)

        outcome = await self._complete(ctx, verification)
        log.info("Slice build complete", confidence=outcome.confidence, heals=ctx.heal_count)
        return outcome

    # ======================================================================
    # Steps
    # ======================================================================

    async def _generate_code(self, ctx: BuildContext) -> None:
        await self._update_slice(ctx.slice_id, status=SliceStatus.BUILDING)

        ctx.context_tree = await ctx.strategy.context_tree()
        previous_files = await self.previous_files(ctx.project_id, ctx.slice_id)

        await self._emit(
            ctx,
            AgentEventType.THOUGHT,
            f"Planning implementation of {ctx.slice_name} with {len(previous_files)} files from earlier slices.",
            ThoughtPayload(category="Planning"),
            delta=self.config.DELTA_PLANNING,
        )

        generated = await ctx.strategy.generate_code(ctx.contract, ctx.context_tree, previous_files)
        for line in generated.reasoning:
            await self._emit(ctx, AgentEventType.THOUGHT, line, ThoughtPayload(category="Reasoning"))

        await self._write(ctx, generated.files, delta=self.config.DELTA_CODE_FILE)

    async def _check_build(self, ctx: BuildContext) -> bool:
        await self._emit(
            ctx,
            AgentEventType.TOOL_CALL,
            "Running build",
            ToolCallPayload(tool="sandbox", command=self.config.BUILD_COMMAND),
        )
        ctx.build_ok, output = await ctx.strategy.build()
        if ctx.build_ok:
            await self._emit(
                ctx,
                AgentEventType.OBSERVATION,
                "Build succeeded.",
                ObservationPayload(category="Build", success=True),
                delta=self.config.DELTA_BUILD_SUCCESS,
            )
        else:
            ctx.last_output = output
            await self._emit(
                ctx,
                AgentEventType.OBSERVATION,
                "Build failed. Errors carried into testing.",
                ObservationPayload(category="Build", success=False, output_tail=output[-300:]),
            )
        return ctx.build_ok

    async def _run_initial_tests(self, ctx: BuildContext) -> None:
        await self._update_slice(ctx.slice_id, status=SliceStatus.TESTING)

        tests = await ctx.strategy.generate_tests(ctx.contract, ctx.files, ctx.context_tree)
        await self._write(ctx, tests.files, delta=self.config.DELTA_TESTS_GENERATED, test_files=True)

        counts, output = await self._run_tests(ctx, attempt=0)
        if counts.all_passed:
            await self._test_result(ctx, counts, passed=True, delta=self.config.DELTA_TESTS_PASSED)
        else:
            await self._test_result(ctx, counts, passed=False, delta=self.config.DELTA_TESTS_FAILED)
            ctx.last_output = counts.errors or output

        ctx.needs_healing = not (ctx.build_ok and counts.all_passed)

    async def _heal(self, ctx: BuildContext) -> None:
        max_attempts = self.config.MAX_SELF_HEAL_RETRIES

        while ctx.needs_healing and ctx.retry_count < max_attempts:
            ctx.retry_count += 1
            ctx.heal_count += 1
            await self._update_slice(
                ctx.slice_id,
                status=SliceStatus.SELF_HEALING,
                retry_count=ctx.retry_count,
            )

            current_files = await ctx.strategy.read_back(ctx.files)
            diagnosis = await ctx.strategy.diagnose(ctx.last_output, current_files, ctx.slice_name)

            await self._emit(
                ctx,
                AgentEventType.SELF_HEAL,
                diagnosis.diagnosis,
                SelfHealPayload(
                    attempt=ctx.retry_count,
                    max_attempts=max_attempts,
                    diagnosis=diagnosis.diagnosis,
                    fix_description=diagnosis.fix_description or None,
                    fix_files=[f.path for f in diagnosis.files],
                ),
                delta=self.config.DELTA_HEAL_ATTEMPT,
            )
            await self._write(ctx, diagnosis.files, delta=self.config.DELTA_HEAL_FIX_FILE, heal_fix=True)

            if not await self._check_build_after_fix(ctx):
                continue

            await self._update_slice(ctx.slice_id, status=SliceStatus.TESTING)
            counts, output = await self._run_tests(ctx, attempt=ctx.retry_count)
            if counts.all_passed:
                await self._test_result(ctx, counts, passed=True, delta=self.config.DELTA_TESTS_PASSED)
                ctx.needs_healing = False
            else:
                await self._test_result(ctx, counts, passed=False, delta=self.config.DELTA_HEAL_STALLED)
                ctx.last_output = counts.errors or output

    async def _check_build_after_fix(self, ctx: BuildContext) -> bool:
        ctx.build_ok, output = await ctx.strategy.build()
        if not ctx.build_ok:
            ctx.last_output = output
            await self._emit(
                ctx,
                AgentEventType.OBSERVATION,
                f"Build still failing after fix attempt {ctx.retry_count}. Re-analyzing...",
                ObservationPayload(category="Healing", success=False, output_tail=output[-300:]),
                delta=self.config.DELTA_HEAL_STALLED,
            )
        return ctx.build_ok

    async def _fail(self, ctx: BuildContext) -> Failed:
        if not ctx.build_ok:
            last_failure: TransmuteError = BuildFailure(
                f"{ctx.slice_name} does not build", metadata={"slice": ctx.slice_name}
            )
        else:
            last_failure = TestFailure(
                f"{ctx.unit.failed} of {ctx.unit.total} unit tests failing",
                metadata={"slice": ctx.slice_name, "failed": ctx.unit.failed, "total": ctx.unit.total},
            )
        reason = HealExhausted(ctx.slice_name, ctx.retry_count, ctx.last_output, last_failure)
        await self._update_slice(ctx.slice_id, status=SliceStatus.FAILED)
        await self._emit(
            ctx,
            AgentEventType.THOUGHT,
            f"Could not repair {ctx.slice_name} after {ctx.retry_count} self-heal attempts.",
            ThoughtPayload(
                category="Healing",
                pipeline_event="slice_build_failed",
                stats={"self_heals": ctx.heal_count, "tests_passed": ctx.unit.passed},
            ),
        )
        logger.warning(
            "Slice build failed",
            project_id=str(ctx.project_id),
            slice=ctx.slice_name,
            attempts=ctx.retry_count,
        )
        return Failed(reason)

    async def _complete(self, ctx: BuildContext, verification: VerificationResult) -> Completed:
        e2e = verification.e2e
        summary = ConfidenceSummary(
            unit_passed=ctx.unit.passed,
            unit_total=max(ctx.unit.total, 1),
            e2e_passed=e2e.passed if e2e else 0,
            e2e_total=e2e.total if e2e else 0,
        )
        final = calculate_confidence(summary, self.config)
        target_score = max(final, self.config.completion_floor)

        target = ScoreTarget(ctx.project_id, ctx.slice_id)
        current = await self.events.aggregator.score(target)
        remaining = target_score - current

        await self._emit(
            ctx,
            AgentEventType.CONFIDENCE_UPDATE,
            f"Final confidence: {target_score * 100:.0f}% - {ctx.tests_passed} tests passed, "
            f"{ctx.lines_written} lines written, {ctx.heal_count} self-heal cycle(s).",
            ConfidenceUpdatePayload(
                final_confidence=target_score,
                lines_of_code=ctx.lines_written,
                tests_passed=ctx.tests_passed,
                tests_total=ctx.tests_run,
                self_heals=ctx.heal_count,
                time_elapsed=ctx.elapsed,
            ),
            delta=remaining if remaining > 0 else None,
        )
        score = await self.events.aggregator.score(target)

        stats = {
            "lines_of_code": ctx.lines_written,
            "tests_passed": ctx.tests_passed,
            "self_heals": ctx.heal_count,
            "time_seconds": ctx.elapsed,
            "confidence": score,
        }
        await self._update_slice(ctx.slice_id, status=SliceStatus.COMPLETE)
        await self.checkpoints.mark_stage_complete(ctx.project_id, slice_step(ctx.slice_id), stats)
        await self._emit(
            ctx,
            AgentEventType.THOUGHT,
            f"Transmutation complete for {ctx.slice_name}.",
            ThoughtPayload(category="Planning", pipeline_event="slice_build_complete", stats=stats),
        )

        outcome = Completed(score)
        if self.on_complete is not None:
            try:
                await self.on_complete(ctx.project_id, ctx.slice_id, outcome)
            except Exception as e:
                logger.warning("Slice complete hook failed", slice=ctx.slice_name, error=str(e))
        return outcome

    # ======================================================================
    # Helpers
    # ======================================================================

    async def _run_tests(self, ctx: BuildContext, attempt: int) -> tuple[SuiteCounts, str]:
        await self._emit(
            ctx,
            AgentEventType.TEST_RUN,
            "Running unit tests" if attempt == 0 else f"Re-running unit tests after fix attempt {attempt}",
            TestRunPayload(suite="unit", command=self.config.TEST_COMMAND, attempt=attempt),
        )
        counts, output = await ctx.strategy.run_tests()
        ctx.unit = counts
        ctx.tests_run = counts.total
        ctx.tests_passed = counts.passed
        return counts, output

    async def _test_result(
        self,
        ctx: BuildContext,
        counts: SuiteCounts,
        passed: bool,
        delta: float,
    ) -> None:
        if passed:
            content = f"All {counts.passed} unit tests passed."
        else:
            first_error = counts.errors.split("\n")[0] if counts.errors else "analyzing failures"
            content = f"{counts.passed}/{counts.total} unit tests passed - {first_error}"
        await self._emit(
            ctx,
            AgentEventType.TEST_RESULT,
            content,
            TestResultPayload(
                suite="unit",
                passed=passed,
                tests_passed=counts.passed,
                tests_failed=counts.failed,
                tests_total=counts.total,
                attempt=ctx.retry_count if ctx.heal_count else 0,
            ),
            delta=delta,
        )

    async def _write(
        self,
        ctx: BuildContext,
        files: list[GeneratedFile],
        delta: float,
        heal_fix: bool = False,
        test_files: bool = False,
    ) -> None:
        for file in files:
            ctx.lines_written += file.line_count
            await self._emit(
                ctx,
                AgentEventType.CODE_WRITE,
                f"{'Applying fix to' if heal_fix else 'Writing'} {file.path}",
                CodeWritePayload(
                    file=file.path,
                    content=file.content,
                    lines_added=file.line_count,
                    heal_fix=heal_fix,
                    test_file=test_files,
                ),
                delta=delta,
            )
        if files:
            await ctx.strategy.write_files(files)
            ctx.merge_files(files)

    async def _emit(
        self,
        ctx: BuildContext,
        event_type: AgentEventType,
        content: str,
        payload: Any,
        delta: Optional[float] = None,
    ) -> int:
        return await self.events.emit(
            ctx.project_id,
            event_type,
            content,
            payload,
            slice_id=ctx.slice_id,
            confidence_delta=delta,
        )

    async def previous_files(self, project_id: UUID, exclude_slice_id: UUID) -> list[GeneratedFile]:
        """Replay files written by completed slices of the project."""
        async with self._session_factory() as session:
            completed = set(
                (
                    await session.scalars(
                        select(VerticalSlice.id).where(
                            VerticalSlice.project_id == project_id,
                            VerticalSlice.status == SliceStatus.COMPLETE,
                            VerticalSlice.id != exclude_slice_id,
                        )
                    )
                ).all()
            )
        if not completed:
            return []

        files: dict[str, GeneratedFile] = {}
        for event in await self.events.stream_since(project_id):
            if event.event_type != AgentEventType.CODE_WRITE or event.slice_id not in completed:
                continue
            if isinstance(event.payload, CodeWritePayload) and not event.payload.test_file:
                files[event.payload.file] = GeneratedFile(
                    path=event.payload.file,
                    content=event.payload.content,
                )
        return list(files.values())

    async def _load(self, slice_id: UUID) -> tuple[VerticalSlice, Project]:
        async with self._session_factory() as session:
            current = await session.get(VerticalSlice, slice_id)
            if current is None:
                raise SliceNotFound(f"Slice {slice_id} not found")
            project = await session.get(Project, current.project_id)
            if project is None:
                raise ProjectNotFound(f"Project {current.project_id} not found")
            return current, project

    async def _check_dependencies(self, current: VerticalSlice) -> None:
        dependency_ids = current.dependency_ids
        if not dependency_ids:
            return

        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(VerticalSlice.id, VerticalSlice.name, VerticalSlice.status).where(
                        VerticalSlice.project_id == current.project_id
                    )
                )
            ).all()

        by_id = {str(row.id): row for row in rows}
        missing = [
            by_id[dep].name if dep in by_id else dep
            for dep in sorted(dependency_ids)
            if dep not in by_id or by_id[dep].status != SliceStatus.COMPLETE
        ]
        if missing:
            raise DependencyNotSatisfied(current.name, missing)

    async def _update_slice(self, slice_id: UUID, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(VerticalSlice).where(VerticalSlice.id == slice_id).values(**values)
            )
            await session.commit()

    async def _update_project(self, project_id: UUID, **values: Any) -> None:
        async with self._session_factory() as session:
            await session.execute(update(Project).where(Project.id == project_id).values(**values))
            await session.commit()
