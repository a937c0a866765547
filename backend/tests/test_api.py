"""
API Tests
=========

HTTP surface of the pipeline, served in-process through httpx.
"""

from collections.abc import AsyncGenerator
from uuid import UUID

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from transmute.api.main import create_app
from transmute.core.database import get_db
from transmute.core.models import PipelineCheckpoint

PREFIX = "/api/v1/projects"

FEATURE_MAP = {"featureMap": {"features": ["Auth", {"name": "Reports", "dependencies": ["Auth"]}]}}


@pytest_asyncio.fixture
async def client(engine, session_factory, test_settings) -> AsyncGenerator[AsyncClient, None]:
    """Client bound to the test database; scripted builds, no live verification."""
    app = create_app(bind=engine, config=test_settings)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def create(client: AsyncClient, **body) -> dict:
    body.setdefault("name", "Legacy CRM")
    response = await client.post(PREFIX, json=body)
    assert response.status_code == 201
    return response.json()


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    async def test_root(self, client: AsyncClient):
        response = await client.get("/")

        assert response.json()["api"] == "/api/v1"


class TestProjects:
    """Creating and reading projects."""

    async def test_create_project(self, client: AsyncClient):
        project = await create(client, source_url="https://git.example.com/crm")

        assert project["status"] == "pending"
        assert project["confidence_score"] == 0.0
        assert project["source_url"] == "https://git.example.com/crm"

        response = await client.get(f"{PREFIX}/{project['id']}")
        assert response.json()["name"] == "Legacy CRM"

    async def test_create_requires_name(self, client: AsyncClient):
        response = await client.post(PREFIX, json={"name": ""})

        assert response.status_code == 422

    async def test_unknown_project(self, client: AsyncClient):
        response = await client.get(f"{PREFIX}/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"


class TestPipelineControl:
    """Driving a project through the pipeline."""

    async def test_process_configure_complete(self, client: AsyncClient):
        project = await create(client, project_metadata={"code_analysis": FEATURE_MAP})
        project_id = project["id"]

        processed = await client.post(f"{PREFIX}/{project_id}/process")
        assert processed.json()["status"] == "analyzed"

        configured = await client.post(
            f"{PREFIX}/{project_id}/configure", json={"preferences": {"framework": "next"}}
        )
        assert configured.status_code == 200
        assert configured.json()["status"] == "complete"

        slices = (await client.get(f"{PREFIX}/{project_id}/slices")).json()
        assert [s["name"] for s in slices] == ["Auth", "Reports"]
        assert all(s["status"] == "complete" for s in slices)
        assert slices[1]["dependencies"] == [slices[0]["id"]]

        checkpoint = (await client.get(f"{PREFIX}/{project_id}/checkpoint")).json()
        assert checkpoint["completed_steps"][0] == "planning"
        assert len(checkpoint["completed_steps"]) == 3

        stored = (await client.get(f"{PREFIX}/{project_id}")).json()
        assert stored["confidence_score"] >= 0.85
        assert stored["preferences"] == {"framework": "next"}

    async def test_process_in_background(self, client: AsyncClient):
        project = await create(client)

        response = await client.post(f"{PREFIX}/{project['id']}/process", params={"wait": "false"})

        assert response.status_code == 200
        assert response.json()["message"] == "Processing started"

    async def test_pause_complete_project_conflicts(self, client: AsyncClient):
        project = await create(client)
        await client.post(f"{PREFIX}/{project['id']}/configure", json={})

        response = await client.post(f"{PREFIX}/{project['id']}/pause")

        assert response.status_code == 409
        assert response.json()["code"] == "STATE"

    async def test_resume_without_checkpoint_conflicts(self, client: AsyncClient):
        project = await create(client)

        response = await client.post(f"{PREFIX}/{project['id']}/resume")

        assert response.status_code == 409

    async def test_paused_project_ignores_process(self, client: AsyncClient):
        project = await create(client)
        project_id = project["id"]
        await client.post(f"{PREFIX}/{project_id}/process")

        paused = await client.post(f"{PREFIX}/{project_id}/pause")
        assert paused.json()["status"] == "paused"

        # Still paused; processing does nothing
        processed = await client.post(f"{PREFIX}/{project_id}/process")
        assert processed.json()["status"] == "paused"

    async def test_corrupt_checkpoint_conflicts(self, client: AsyncClient, db_session):
        project = await create(client)
        db_session.add(
            PipelineCheckpoint(project_id=UUID(project["id"]), step_name="code_analysis", result=None)
        )
        await db_session.commit()

        response = await client.post(f"{PREFIX}/{project['id']}/process")

        assert response.status_code == 409
        assert response.json()["code"] == "CHECKPOINT"
        stored = (await client.get(f"{PREFIX}/{project['id']}")).json()
        assert stored["status"] == "failed"

    async def test_retry_unknown_slice(self, client: AsyncClient):
        project = await create(client)

        response = await client.post(
            f"{PREFIX}/{project['id']}/slices/00000000-0000-0000-0000-000000000000/retry"
        )

        assert response.status_code == 404


class TestEvents:
    """Paging the event stream."""

    async def test_cursor_paging(self, client: AsyncClient):
        project = await create(client, project_metadata={"code_analysis": FEATURE_MAP})
        await client.post(f"{PREFIX}/{project['id']}/configure", json={})

        everything = (await client.get(f"{PREFIX}/{project['id']}/events", params={"limit": 1000})).json()
        total = len(everything["items"])
        assert total > 10

        seen = []
        cursor = 0
        while True:
            page = (
                await client.get(f"{PREFIX}/{project['id']}/events", params={"cursor": cursor, "limit": 7})
            ).json()
            if not page["items"]:
                assert page["next_cursor"] == cursor
                break
            seen.extend(item["id"] for item in page["items"])
            cursor = page["next_cursor"]

        assert seen == [item["id"] for item in everything["items"]]

    async def test_slice_filter(self, client: AsyncClient):
        project = await create(client, project_metadata={"code_analysis": FEATURE_MAP})
        await client.post(f"{PREFIX}/{project['id']}/configure", json={})
        slices = (await client.get(f"{PREFIX}/{project['id']}/slices")).json()

        response = await client.get(
            f"{PREFIX}/{project['id']}/events", params={"slice_id": slices[0]["id"], "limit": 1000}
        )

        items = response.json()["items"]
        assert items
        assert {item["slice_id"] for item in items} == {slices[0]["id"]}
        assert any(item["event_type"] == "code_write" for item in items)

    async def test_invalid_cursor(self, client: AsyncClient):
        project = await create(client)

        response = await client.get(f"{PREFIX}/{project['id']}/events", params={"cursor": -1})

        assert response.status_code == 422
