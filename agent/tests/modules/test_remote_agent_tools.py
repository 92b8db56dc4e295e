"""Tests for the remote agent tool layer and its HTTP surface.

Covers: task dispatch into new and re-used workspaces, repository
preparation, task row bookkeeping, progress notifications over Redis,
workspace tools, and the /execute, /health endpoints.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from modules.remote_agent import main
from modules.remote_agent.context import build_context
from modules.remote_agent.tools import RemoteAgentTools
from shared.auth import require_service_auth
from shared.models.agent_task import AgentTask


@pytest.fixture
def context(settings, sqlite_session_factory, fake_pool, credentials, mock_redis):
    fake_pool.on("docker inspect", stdout="running\n")
    fake_pool.on("docker wait", stdout="0\n")
    fake_pool.on("test -d", returncode=1)
    return build_context(
        settings, sqlite_session_factory, redis=mock_redis, credentials=credentials, pool=fake_pool,
    )


@pytest.fixture
def tools(context):
    return RemoteAgentTools(context)


async def _task_row(session_factory, task_id) -> AgentTask:
    async with session_factory() as session:
        result = await session.execute(select(AgentTask).where(AgentTask.agent_id == task_id))
        return result.scalar_one()


# ---------------------------------------------------------------------------
# run_task
# ---------------------------------------------------------------------------

class TestRunTask:
    @pytest.mark.asyncio
    async def test_new_task_creates_workspace_and_starts_container(self, tools, fake_pool, sqlite_session_factory):
        result = await tools.run_task("Write a CLI", task_id="task-0001", workspace_name="cli tool")

        assert result["status"] == "running"
        assert result["workspace"] == "/opt/agentflow/workspaces/cli-tool-task-000"
        assert result["workspace_is_new"] is True
        assert fake_pool.ran("mkdir -p -- /opt/agentflow/workspaces/cli-tool-task-000")
        assert result["container_id"].startswith("claude-agent-")

        row = await _task_row(sqlite_session_factory, "task-0001")
        assert row.container_id == result["container_id"]
        assert row.task_description == "Write a CLI"

    @pytest.mark.asyncio
    async def test_result_recorded_on_task_row(self, tools, sqlite_session_factory):
        result = await tools.run_task("Write a CLI", task_id="task-0002")
        await tools._runs["task-0002"].wait()

        row = await _task_row(sqlite_session_factory, "task-0002")
        # No output in a fraction of a second counts as a failed run
        assert row.status == "failed"
        assert row.completed_at is not None
        assert "too quickly" in row.error
        assert row.container_id == result["container_id"]

    @pytest.mark.asyncio
    async def test_rerun_reuses_workspace(self, tools, fake_pool):
        first = await tools.run_task("Step one", task_id="task-0003")
        await tools._runs["task-0003"].wait()
        second = await tools.run_task("Step two", task_id="task-0003")

        assert second["workspace"] == first["workspace"]
        assert second["workspace_is_new"] is False
        assert len(fake_pool.ran("mkdir -p")) == 1

    @pytest.mark.asyncio
    async def test_repo_url_is_cloned_and_registered(self, tools, context, fake_pool):
        result = await tools.run_task(
            "Fix the tests", task_id="task-0004", repo_url="https://github.com/acme/widgets.git", branch="dev",
        )

        assert result["github_repo_url"] is None
        assert any("clone" in c and "--branch dev" in c for c, _ in fake_pool.secret_calls)
        ws = await context.registry.get_task_workspace("task-0004")
        assert ws.github_repo_url == "https://github.com/acme/widgets.git"
        assert ws.github_repo_name == "widgets"

    @pytest.mark.asyncio
    async def test_preparation_failure_marks_task_failed(self, tools, fake_pool, sqlite_session_factory):
        fake_pool.on("mkdir -p", returncode=1, stderr="No space left on device")

        with pytest.raises(RuntimeError, match="Workspace preparation failed"):
            await tools.run_task("Write a CLI", task_id="task-0005")

        row = await _task_row(sqlite_session_factory, "task-0005")
        assert row.status == "failed"
        assert "No space left" in row.error
        assert not fake_pool.ran("docker run")

    @pytest.mark.asyncio
    async def test_progress_published_to_platform_channel(self, tools, fake_pool, mock_redis):
        fake_pool.stream_lines = [json.dumps({"type": "tool_use", "name": "Bash", "input": {"command": "make"}})]

        result = await tools.run_task(
            "Build", task_id="task-0006", platform="discord", platform_channel_id="chan-1",
        )
        await tools._runs["task-0006"].wait()

        channel, payload = mock_redis.publish.await_args_list[0].args
        data = json.loads(payload)
        assert channel == "notifications:discord"
        assert data["platform_channel_id"] == "chan-1"
        assert data["task_id"] == "task-0006"
        assert data["container_id"] == result["container_id"]
        assert data["content"].startswith("⚡")

    @pytest.mark.asyncio
    async def test_empty_prompt_rejected(self, tools):
        with pytest.raises(ValueError):
            await tools.run_task("   ")


# ---------------------------------------------------------------------------
# Workspace tools
# ---------------------------------------------------------------------------

class TestWorkspaceTools:
    @pytest.mark.asyncio
    async def test_push_requires_workspace(self, tools):
        with pytest.raises(ValueError, match="No active workspace"):
            await tools.push_workspace("unknown-task")

    @pytest.mark.asyncio
    async def test_push_uses_task_workspace(self, tools, fake_pool):
        await tools.run_task("Build", task_id="task-0007")

        result = await tools.push_workspace("task-0007", message="Ship it", branch="main")

        assert result["success"] is True
        assert result["path"].startswith("/opt/agentflow/workspaces/workspace-task-000")
        # Clean tree: nothing to commit, push only
        assert not fake_pool.ran("'Ship it'")
        assert "push origin main" in fake_pool.secret_calls[-1][0]

    @pytest.mark.asyncio
    async def test_archive_and_list(self, tools):
        await tools.run_task("Build", task_id="task-0008")

        listed = await tools.list_workspaces(task_id="task-0008")
        archived = await tools.archive_workspace("task-0008")

        assert len(listed["workspaces"]) == 1
        assert listed["workspaces"][0]["status"] == "active"
        assert archived == {"task_id": "task-0008", "archived": 1}

    @pytest.mark.asyncio
    async def test_cleanup_workspaces_report(self, tools):
        assert await tools.cleanup_workspaces() == {"cleaned": 0, "errors": 0}


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------

@pytest.fixture
def client():
    main.app.dependency_overrides[require_service_auth] = lambda: None
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


class TestApp:
    def test_manifest(self, client):
        response = client.get("/manifest")
        assert response.status_code == 200
        assert response.json()["module_name"] == "remote_agent"

    def test_health_before_startup(self, client):
        with patch.object(main, "context", None):
            assert client.get("/health").json()["status"] == "starting"

    def test_health_reports_pool_and_agents(self, client):
        ctx = MagicMock()
        ctx.pool.state.value = "ready"
        ctx.containers.active_count = 2
        with patch.object(main, "context", ctx):
            body = client.get("/health").json()
        assert body == {"status": "ok", "remote_pool": "ready", "active_agents": 2}

    def test_execute_unknown_tool(self, client):
        with patch.object(main, "tools", MagicMock()):
            body = client.post("/execute", json={"tool_name": "remote_agent.nope"}).json()
        assert body["success"] is False
        assert body["error"] == "Unknown tool: remote_agent.nope"

    def test_execute_strips_platform_context_from_other_tools(self, client):
        mock_tools = MagicMock()
        mock_tools.agent_status = AsyncMock(return_value={"running": True})
        with patch.object(main, "tools", mock_tools):
            body = client.post(
                "/execute",
                json={
                    "tool_name": "remote_agent.agent_status",
                    "arguments": {"container_id": "claude-agent-1", "platform": "discord", "conversation_id": "c"},
                    "user_id": "u1",
                },
            ).json()
        assert body == {"tool_name": "remote_agent.agent_status", "success": True, "result": {"running": True}, "error": None}
        mock_tools.agent_status.assert_awaited_once_with(container_id="claude-agent-1", user_id="u1")

    def test_execute_wraps_errors(self, client):
        mock_tools = MagicMock()
        mock_tools.push_workspace = AsyncMock(side_effect=ValueError("No active workspace for task t"))
        with patch.object(main, "tools", mock_tools):
            body = client.post(
                "/execute", json={"tool_name": "remote_agent.push_workspace", "arguments": {"task_id": "t"}},
            ).json()
        assert body["success"] is False
        assert body["error"] == "No active workspace for task t"

    def test_execute_before_startup(self, client):
        with patch.object(main, "tools", None):
            body = client.post("/execute", json={"tool_name": "remote_agent.list_agents"}).json()
        assert body["error"] == "Module not ready"
