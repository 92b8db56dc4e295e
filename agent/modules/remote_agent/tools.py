"""Remote agent tool implementations."""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import asdict
from datetime import datetime, timezone

import structlog
from sqlalchemy import select

from modules.remote_agent.containers import AgentResult, AgentRun, ResultCallback, SpawnOptions
from modules.remote_agent.context import RemoteAgentContext
from modules.remote_agent.notifier import RedisNotifier
from modules.remote_agent.workspaces import WorkspaceInfo, WorkspaceOptions
from shared.models.agent_task import AgentTask

logger = structlog.get_logger()

MAX_STORED_RESULT = 10_000  # chars of agent output persisted on the task row
MAX_STATUS_OUTPUT = 5_000


def _workspace_dict(ws: WorkspaceInfo) -> dict:
    data = asdict(ws)
    data["created_at"] = ws.created_at.isoformat() if ws.created_at else None
    return data


class RemoteAgentTools:
    def __init__(self, context: RemoteAgentContext) -> None:
        self.context = context
        self._runs: dict[str, AgentRun] = {}

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    async def _begin_task(
        self,
        task_id: str,
        prompt: str,
        platform: str | None,
        platform_channel_id: str | None,
        platform_thread_id: str | None,
        user_id: str | None,
    ) -> None:
        async with self.context.session_factory() as session:
            result = await session.execute(select(AgentTask).where(AgentTask.agent_id == task_id))
            task = result.scalar_one_or_none()
            if task is None:
                task = AgentTask(agent_id=task_id, task_description=prompt)
                session.add(task)
            task.task_description = prompt
            task.platform = platform
            task.platform_channel_id = platform_channel_id
            task.platform_thread_id = platform_thread_id
            task.user_id = user_id
            task.status = "pending"
            task.started_at = datetime.now(timezone.utc)
            task.completed_at = None
            task.result = None
            task.error = None
            await session.commit()

    async def _update_task(self, task_id: str, **fields) -> None:
        async with self.context.session_factory() as session:
            result = await session.execute(select(AgentTask).where(AgentTask.agent_id == task_id))
            task = result.scalar_one_or_none()
            if task is None:
                logger.warning("agent_task_missing", task_id=task_id)
                return
            for key, value in fields.items():
                setattr(task, key, value)
            await session.commit()

    def _result_recorder(self, task_id: str) -> ResultCallback:
        async def record(result: AgentResult) -> None:
            await self._update_task(
                task_id,
                status="completed" if result.success else "failed",
                completed_at=datetime.now(timezone.utc),
                container_id=result.container_id,
                result=result.output[-MAX_STORED_RESULT:],
                error=result.error,
            )
            logger.info(
                "agent_task_finished",
                task_id=task_id,
                container_id=result.container_id,
                success=result.success,
                duration=round(result.duration, 1),
            )
        return record

    def _forget_run(self, task_id: str, run: AgentRun) -> None:
        def done(task: asyncio.Task) -> None:
            if self._runs.get(task_id) is run:
                del self._runs[task_id]
            if not task.cancelled() and task.exception() is not None:
                logger.warning("agent_run_ended_with_error", task_id=task_id, error=str(task.exception()))
        run.task.add_done_callback(done)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    async def run_task(
        self,
        prompt: str,
        task_id: str | None = None,
        workspace_name: str | None = None,
        new_workspace: bool = False,
        repo_url: str | None = None,
        branch: str | None = None,
        create_repo: bool = False,
        repo_visibility: str = "private",
        context_files: list[str] | None = None,
        requirements: list[str] | None = None,
        max_iterations: int | None = None,
        timeout: int | None = None,
        platform: str | None = None,
        platform_channel_id: str | None = None,
        platform_thread_id: str | None = None,
        user_id: str | None = None,
    ) -> dict:
        """Dispatch a task to a new agent container inside the task's workspace.

        Returns as soon as the container is running; progress is streamed to
        the originating chat channel and the final status lands on the task row.
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        task_id = task_id or uuid.uuid4().hex
        await self._begin_task(task_id, prompt, platform, platform_channel_id, platform_thread_id, user_id)

        ws = await self.context.registry.get_or_create_workspace(
            task_id, WorkspaceOptions(preferred_name=workspace_name, force_new=new_workspace),
        )
        if ws.is_new:
            if repo_url:
                prepared = await self.context.repos.clone(repo_url, ws.path, branch=branch)
                if prepared.success:
                    await self.context.registry.register_github_repo(task_id, repo_url)
            else:
                prepared = await self.context.repos.create_workspace(
                    ws.name, create_remote=create_repo, visibility=repo_visibility,
                )
                if prepared.success and prepared.url:
                    await self.context.registry.register_github_repo(task_id, prepared.url)
            if not prepared.success:
                await self._update_task(
                    task_id,
                    status="failed",
                    completed_at=datetime.now(timezone.utc),
                    error=prepared.error,
                )
                raise RuntimeError(f"Workspace preparation failed: {prepared.error}")

        notifier = None
        if self.context.redis is not None and platform and platform_channel_id:
            notifier = RedisNotifier(
                self.context.redis,
                platform,
                platform_channel_id,
                platform_thread_id=platform_thread_id,
                user_id=user_id,
                task_id=task_id,
            )

        await self._update_task(task_id, status="running")
        # A start failure is recorded on the task row by the result callback
        run = await self.context.containers.spawn_agent(
            prompt,
            SpawnOptions(
                workspace_path=ws.path,
                context_files=context_files or [],
                requirements=requirements or [],
                max_iterations=max_iterations,
                timeout=float(timeout) if timeout else None,
                notify=notifier,
                on_result=self._result_recorder(task_id),
            ),
        )

        if notifier is not None:
            notifier.container_id = run.container_id
        self._runs[task_id] = run
        self._forget_run(task_id, run)
        await self._update_task(task_id, container_id=run.container_id)
        logger.info("agent_task_dispatched", task_id=task_id, container_id=run.container_id, workspace=ws.path)

        return {
            "task_id": task_id,
            "container_id": run.container_id,
            "workspace": ws.path,
            "workspace_is_new": ws.is_new,
            "github_repo_url": ws.github_repo_url,
            "status": "running",
        }

    async def stop_agent(self, container_id: str, user_id: str | None = None) -> dict:
        outcome = await self.context.containers.stop_agent(container_id)
        return {**asdict(outcome), "success": outcome.success}

    async def agent_status(self, container_id: str, user_id: str | None = None) -> dict:
        status = await self.context.containers.get_agent_status(container_id)
        data = asdict(status)
        if status.output:
            data["output"] = status.output[-MAX_STATUS_OUTPUT:]
        return data

    async def list_agents(self, user_id: str | None = None) -> dict:
        agents = await self.context.containers.list_agents()
        return {"agents": [asdict(a) for a in agents], "count": len(agents)}

    async def agent_logs(self, container_id: str, tail: int = 100, user_id: str | None = None) -> dict:
        logs = await self.context.containers.get_agent_logs(container_id, tail)
        return {"container_id": container_id, "logs": logs}

    async def cleanup_containers(self, user_id: str | None = None) -> dict:
        return asdict(await self.context.containers.cleanup_containers())

    async def list_workspaces(self, task_id: str | None = None, user_id: str | None = None) -> dict:
        if task_id:
            workspaces = await self.context.registry.get_all_task_workspaces(task_id)
            return {"task_id": task_id, "workspaces": [_workspace_dict(ws) for ws in workspaces]}
        remote = await self.context.repos.list_workspaces()
        return {"workspaces": [asdict(ws) for ws in remote]}

    async def archive_workspace(
        self,
        task_id: str,
        workspace_path: str | None = None,
        user_id: str | None = None,
    ) -> dict:
        count = await self.context.registry.archive_workspace(task_id, workspace_path)
        return {"task_id": task_id, "archived": count}

    async def cleanup_workspaces(self, user_id: str | None = None) -> dict:
        return asdict(await self.context.registry.cleanup_orphaned_workspaces())

    async def _require_workspace(self, task_id: str) -> WorkspaceInfo:
        ws = await self.context.registry.get_task_workspace(task_id)
        if ws is None:
            raise ValueError(f"No active workspace for task {task_id}")
        return ws

    async def push_workspace(
        self,
        task_id: str,
        message: str | None = None,
        branch: str = "main",
        force: bool = False,
        user_id: str | None = None,
    ) -> dict:
        ws = await self._require_workspace(task_id)
        kwargs = {"branch": branch, "force": force}
        if message:
            kwargs["message"] = message
        result = await self.context.repos.push_workspace(ws.path, **kwargs)
        return {"task_id": task_id, **asdict(result)}

    async def create_branch(self, task_id: str, branch: str, user_id: str | None = None) -> dict:
        ws = await self._require_workspace(task_id)
        result = await self.context.repos.create_branch(ws.path, branch)
        return {"task_id": task_id, **asdict(result)}
