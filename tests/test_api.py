"""Tests for the taskboard HTTP API."""

from __future__ import annotations

import uuid
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from agent_taskboard.config import Settings
from agent_taskboard.projects import MappingRootsProvider
from agent_taskboard.server.api import create_app


@pytest.fixture
def app(tmp_path: Path):
    roots = {}
    for name in ("alpha", "beta"):
        root = tmp_path / name
        root.mkdir()
        roots[name] = root.as_uri()
    settings = Settings(fallback_root=tmp_path, lock_timeout_seconds=5.0)
    return create_app(settings=settings, roots_provider=MappingRootsProvider(roots))


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _batch(client: AsyncClient, project: str, tasks: list[dict], mode: str = "append") -> dict:
    resp = await client.post(f"/api/projects/{project}/tasks/batch", json={"tasks": tasks, "mode": mode})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.anyio
class TestTaskRoutes:
    async def test_list_empty(self, client: AsyncClient) -> None:
        resp = await client.get("/api/projects/alpha/tasks")
        assert resp.status_code == 200
        assert resp.json() == {"tasks": [], "total": 0}

    async def test_batch_and_get(self, client: AsyncClient) -> None:
        data = await _batch(client, "alpha", [
            {"name": "A", "description": "first"},
            {"name": "B", "dependencies": ["A"], "related_files": [{"path": "src/b.py", "type": "CREATE"}]},
        ])
        created = {t["name"]: t for t in data["created"]}
        assert created["B"]["dependencies"] == [{"taskId": created["A"]["id"]}]

        resp = await client.get(f"/api/projects/alpha/tasks/{created['B']['id']}")
        assert resp.status_code == 200
        assert resp.json()["task"]["relatedFiles"][0]["type"] == "CREATE"

    async def test_projects_do_not_leak(self, client: AsyncClient) -> None:
        await _batch(client, "alpha", [{"name": "only-alpha"}])
        resp = await client.get("/api/projects/beta/tasks")
        assert resp.json()["total"] == 0

    async def test_error_mapping(self, client: AsyncClient) -> None:
        resp = await client.get(f"/api/projects/alpha/tasks/{uuid.uuid4()}")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

        resp = await client.get("/api/projects/alpha/tasks/not-a-uuid")
        assert resp.status_code == 422
        assert resp.json()["details"]["field"] == "taskId"

        await _batch(client, "alpha", [{"name": "A"}])
        resp = await client.post("/api/projects/alpha/tasks/batch", json={"tasks": [{"name": "A"}]})
        assert resp.status_code == 422
        assert resp.json()["error"] == "validation_error"

    async def test_start_verify_flow(self, client: AsyncClient) -> None:
        data = await _batch(client, "alpha", [{"name": "A"}, {"name": "B", "dependencies": ["A"]}])
        ids = {t["name"]: t["id"] for t in data["created"]}

        resp = await client.get(f"/api/projects/alpha/tasks/{ids['B']}/can-execute")
        assert resp.json() == {"can_execute": False, "blocked_by": [ids["A"]]}
        resp = await client.post(f"/api/projects/alpha/tasks/{ids['B']}/start")
        assert resp.status_code == 422

        resp = await client.post(f"/api/projects/alpha/tasks/{ids['A']}/start")
        assert resp.json()["task"]["status"] == "in_progress"
        resp = await client.post(
            f"/api/projects/alpha/tasks/{ids['A']}/verify", json={"score": 60, "summary": "add tests"}
        )
        assert resp.json()["completed"] is False
        resp = await client.post(
            f"/api/projects/alpha/tasks/{ids['A']}/verify", json={"score": 92, "summary": "done"}
        )
        body = resp.json()
        assert body["completed"] is True
        assert body["task"]["status"] == "completed"
        assert body["task"]["summary"] == "done"

    async def test_content_summary_delete(self, client: AsyncClient) -> None:
        data = await _batch(client, "alpha", [{"name": "A"}])
        tid = data["created"][0]["id"]
        resp = await client.patch(f"/api/projects/alpha/tasks/{tid}", json={"notes": "n", "name": "A1"})
        assert resp.json()["task"]["name"] == "A1"
        resp = await client.post(f"/api/projects/alpha/tasks/{tid}/summary", json={"summary": "wip"})
        assert resp.json()["task"]["summary"] == "wip"
        resp = await client.delete(f"/api/projects/alpha/tasks/{tid}")
        assert resp.status_code == 200
        assert (await client.get("/api/projects/alpha/tasks")).json()["total"] == 0

    async def test_query(self, client: AsyncClient) -> None:
        await _batch(client, "alpha", [{"name": "Login", "description": "oauth"}, {"name": "Docs"}])
        resp = await client.get("/api/projects/alpha/tasks/query", params={"query": "oauth"})
        body = resp.json()
        assert body["total"] == 1
        assert body["tasks"][0]["name"] == "Login"
        assert body["total_pages"] == 1

    async def test_clear_and_backups(self, client: AsyncClient) -> None:
        await _batch(client, "alpha", [{"name": "A"}])
        resp = await client.post("/api/projects/alpha/tasks/clear")
        assert resp.json()["cleared"] == 1
        resp = await client.get("/api/projects/alpha/tasks/backups")
        assert len(resp.json()["backups"]) == 1

    async def test_status_route(self, client: AsyncClient) -> None:
        data = await _batch(client, "alpha", [{"name": "A"}])
        tid = data["created"][0]["id"]
        resp = await client.post(f"/api/projects/alpha/tasks/{tid}/status", json={"status": "completed"})
        assert resp.status_code == 422
        resp = await client.post(f"/api/projects/alpha/tasks/{tid}/status", json={"status": "in_progress"})
        assert resp.json()["task"]["status"] == "in_progress"


@pytest.mark.anyio
class TestProjectRoutes:
    async def test_context_and_listing(self, client: AsyncClient) -> None:
        resp = await client.get("/api/projects/alpha/context")
        ctx = resp.json()
        assert ctx["projectId"] == "alpha"
        assert ctx["tasksFilePath"].endswith("tasks.json")
        resp = await client.get("/api/projects")
        assert "alpha" in resp.json()["projects"]

    async def test_validate_marker(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/projects/alpha/validate", json={"content": "text\n\n<!-- Project: beta -->"}
        )
        body = resp.json()
        assert body["validation"]["isValid"] is False
        assert body["validation"]["detectedProject"] == "beta"
        assert body["detection"]["detectedProject"] == "beta"

    async def test_blank_project_rejected(self, client: AsyncClient) -> None:
        resp = await client.get("/api/projects/%20/tasks")
        assert resp.status_code == 422


@pytest.mark.anyio
class TestWorkflowRoutes:
    async def test_lifecycle(self, client: AsyncClient) -> None:
        task_id = str(uuid.uuid4())
        resp = await client.post(
            "/api/projects/alpha/workflows",
            json={"task_id": task_id, "template": "reviewed_execution"},
        )
        assert resp.status_code == 201
        wf = resp.json()["workflow"]
        wid = wf["workflowId"]
        assert wf["steps"][0]["status"] == "in_progress"

        resp = await client.post(f"/api/workflows/{wid}/steps/0", json={"status": "completed"})
        assert resp.json()["updated"] is True
        resp = await client.get(f"/api/workflows/{wid}/continuation")
        cont = resp.json()
        assert cont["shouldProceed"] is True
        assert cont["nextTool"] == "code_review_and_cleanup_tool"

        resp = await client.post(f"/api/workflows/{wid}/steps/1", json={"status": "failed", "error": "lint"})
        assert resp.json()["workflow"]["status"] == "paused"
        resp = await client.post(f"/api/workflows/{wid}/steps/2", json={"status": "completed"})
        assert resp.json()["updated"] is False

        resp = await client.post(
            f"/api/workflows/{wid}/transfers",
            json={"source_tool": "verify_task", "target_tool": "code_review_and_cleanup_tool", "data": {"x": 1}},
        )
        assert resp.status_code == 201
        resp = await client.get(f"/api/workflows/{wid}/transfers")
        assert len(resp.json()["transfers"]) == 1

        resp = await client.get(f"/api/workflows/{wid}/monitoring")
        assert resp.json()["failedSteps"] == 1

        resp = await client.get("/api/projects/alpha/workflows", params={"task_id": task_id})
        assert [w["workflowId"] for w in resp.json()["workflows"]] == [wid]
        resp = await client.get("/api/projects/beta/workflows")
        assert resp.json()["workflows"] == []

    async def test_task_filter_ignores_case(self, client: AsyncClient) -> None:
        task_id = str(uuid.uuid4()).upper()
        resp = await client.post("/api/projects/alpha/workflows", json={"task_id": task_id, "tools": ["execute_task"]})
        wid = resp.json()["workflow"]["workflowId"]
        resp = await client.get("/api/projects/alpha/workflows", params={"task_id": task_id})
        assert [w["workflowId"] for w in resp.json()["workflows"]] == [wid]

    async def test_duplicate_active_workflow_conflicts(self, client: AsyncClient) -> None:
        body = {"task_id": str(uuid.uuid4()), "tools": ["execute_task"]}
        assert (await client.post("/api/projects/alpha/workflows", json=body)).status_code == 201
        assert (await client.post("/api/projects/alpha/workflows", json=body)).status_code == 422

    async def test_unknown_workflow(self, client: AsyncClient) -> None:
        assert (await client.get("/api/workflows/missing")).status_code == 404
        assert (await client.get("/api/workflows/missing/monitoring")).status_code == 404
        resp = await client.get("/api/workflows/missing/continuation")
        assert resp.json()["shouldProceed"] is False

    async def test_cleanup(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/api/projects/alpha/workflows", json={"task_id": str(uuid.uuid4()), "tools": ["execute_task"]}
        )
        wid = resp.json()["workflow"]["workflowId"]
        await client.post(f"/api/workflows/{wid}/steps/0", json={"status": "completed"})
        resp = await client.post("/api/workflows/cleanup", json={"max_age_ms": 0})
        assert resp.json() == {"removed": 1}
        assert (await client.get(f"/api/workflows/{wid}")).status_code == 404
