"""
Checkpoint Store Tests
======================
"""

import asyncio

import pytest

from transmute.core.models import PipelineCheckpoint, Project
from transmute.core.pipeline.checkpoint import PLANNING_STEP, CheckpointStore, slice_step
from transmute.core.pipeline.errors import CheckpointCorruption

from fakes import reload


class TestCheckpointStore:
    """Saving and loading completed steps."""

    async def test_fresh_project_has_no_checkpoint(self, checkpoints: CheckpointStore, project):
        assert await checkpoints.load(project.id) is None

    async def test_steps_load_in_completion_order(self, checkpoints, project, session_factory):
        await checkpoints.mark_stage_complete(project.id, "code_analysis", {"features": ["auth"]})
        await checkpoints.mark_stage_complete(project.id, "app_behaviour", {"pages": 4})
        await checkpoints.mark_stage_complete(project.id, PLANNING_STEP, {"slices": ["Auth"]})

        checkpoint = await checkpoints.load(project.id)

        assert checkpoint.completed_steps == ["code_analysis", "app_behaviour", PLANNING_STEP]
        assert checkpoint.stage_results["app_behaviour"] == {"pages": 4}
        assert checkpoint.is_complete("code_analysis")
        assert not checkpoint.is_complete(slice_step("missing"))
        assert checkpoint.last_updated is not None

        stored = await reload(session_factory, Project, project.id)
        assert stored.pipeline_step == PLANNING_STEP

    async def test_marking_announces_checkpoint(self, checkpoints, events, project):
        await checkpoints.mark_stage_complete(project.id, "code_analysis", {})

        [event] = await events.stream_since(project.id)
        assert event.payload.pipeline_event == "checkpoint"
        assert event.payload.step == "code_analysis"

    async def test_remark_replaces_result_keeps_position(self, checkpoints, project):
        await checkpoints.mark_stage_complete(project.id, "code_analysis", {"version": 1})
        await checkpoints.mark_stage_complete(project.id, "app_behaviour", {})
        await checkpoints.mark_stage_complete(project.id, "code_analysis", {"version": 2})

        checkpoint = await checkpoints.load(project.id)

        assert checkpoint.completed_steps == ["code_analysis", "app_behaviour"]
        assert checkpoint.stage_results["code_analysis"] == {"version": 2}

    async def test_concurrent_marks_are_all_kept(self, checkpoints, project):
        names = [f"stage_{n}" for n in range(6)]

        await asyncio.gather(
            *(checkpoints.mark_stage_complete(project.id, name, {"name": name}) for name in names)
        )

        checkpoint = await checkpoints.load(project.id)
        assert sorted(checkpoint.completed_steps) == names
        assert all(checkpoint.stage_results[name] == {"name": name} for name in names)

    async def test_is_stage_complete(self, checkpoints, project):
        await checkpoints.mark_stage_complete(project.id, "code_analysis")

        assert await checkpoints.is_stage_complete(project.id, "code_analysis")
        assert not await checkpoints.is_stage_complete(project.id, "app_behaviour")

    async def test_clear_resets_state(self, checkpoints, project, session_factory):
        await checkpoints.mark_stage_complete(project.id, "code_analysis", {})

        await checkpoints.clear(project.id)

        assert await checkpoints.load(project.id) is None
        assert (await reload(session_factory, Project, project.id)).pipeline_step is None

    async def test_non_dict_result_is_rejected(self, checkpoints, project):
        with pytest.raises(TypeError):
            await checkpoints.mark_stage_complete(project.id, "code_analysis", ["not", "a", "dict"])


class TestCorruption:
    """Integrity violations in stored rows."""

    @pytest.mark.parametrize("result", [None, ["a", "list"], "text"])
    async def test_step_without_object_result(self, checkpoints, project, db_session, result):
        db_session.add(PipelineCheckpoint(project_id=project.id, step_name="code_analysis", result=result))
        await db_session.commit()

        with pytest.raises(CheckpointCorruption) as exc_info:
            await checkpoints.load(project.id)

        assert not exc_info.value.retryable
        assert exc_info.value.metadata["step"] == "code_analysis"
