"""Workspace registry: binds each logical task to one primary remote directory.

Rows live in ``task_workspaces``; an in-process cache keyed by task id is
written through on every mutation.  Destructive operations go through
:func:`ensure_within_base` first and refuse anything outside the configured
workspace root.
"""

from __future__ import annotations

import asyncio
import posixpath
import re
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.remote_agent.ssh import SSHConnectionPool, sh
from shared.models.agent_task import AgentTask
from shared.models.task_workspace import TaskWorkspace

logger = structlog.get_logger()

_NAME_INVALID = re.compile(r"[^a-z0-9-]")
_DASH_RUN = re.compile(r"-+")
MAX_NAME_STEM = 50


class UnsafeWorkspacePathError(Exception):
    """A destructive operation targeted a path outside the workspace root."""


@dataclass
class WorkspaceOptions:
    preferred_name: str | None = None
    force_new: bool = False


@dataclass
class WorkspaceInfo:
    task_id: str
    path: str
    name: str
    id: int | None = None
    github_repo_url: str | None = None
    github_repo_name: str | None = None
    is_primary: bool = True
    status: str = "active"
    created_at: datetime | None = None
    is_new: bool = False

    @classmethod
    def from_row(cls, row: TaskWorkspace, is_new: bool = False) -> WorkspaceInfo:
        return cls(
            task_id=row.task_id,
            path=row.workspace_path,
            name=row.workspace_name,
            id=row.id,
            github_repo_url=row.github_repo_url,
            github_repo_name=row.github_repo_name,
            is_primary=row.is_primary,
            status=row.status,
            created_at=row.created_at,
            is_new=is_new,
        )


@dataclass
class OrphanCleanupReport:
    cleaned: int = 0
    errors: int = 0


def _base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or "0"


def _timestamp_suffix() -> str:
    return _base36(int(time.time() * 1000))


def generate_workspace_name(task_id: str, preferred_name: str | None = None) -> str:
    """Build a filesystem-safe workspace name for ``task_id``.

    ``"My Cool Task!!"`` for task ``abcdef1234`` becomes ``my-cool-task-abcdef12``.
    Without a usable preferred name, ``workspace-<id8>-<base36 ms>`` is used.
    """
    fragment = task_id[:8]
    if preferred_name:
        stem = _NAME_INVALID.sub("-", preferred_name.lower())
        stem = _DASH_RUN.sub("-", stem).strip("-")[:MAX_NAME_STEM].strip("-")
        if stem:
            return f"{stem}-{fragment}"
    return f"workspace-{fragment}-{_timestamp_suffix()}"


def ensure_within_base(path: str, base_path: str) -> str:
    """Return the normalized ``path`` if it sits strictly under ``base_path``.

    Raises :class:`UnsafeWorkspacePathError` otherwise.  Any ``..`` segment
    is refused outright, even one that would normalize back inside the root.
    """
    if not path or "\0" in path or ".." in path.split("/"):
        raise UnsafeWorkspacePathError(f"Refusing unsafe workspace path: {path!r}")
    root = posixpath.normpath(base_path)
    normalized = posixpath.normpath(path)
    if not posixpath.isabs(normalized) or not normalized.startswith(root.rstrip("/") + "/"):
        raise UnsafeWorkspacePathError(
            f"Refusing path outside workspace root {root}: {path!r}"
        )
    return normalized


class WorkspaceRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        pool: SSHConnectionPool,
        base_path: str,
        max_workspaces_per_task: int = 3,
        orphan_cleanup_hours: int = 24,
    ) -> None:
        self.session_factory = session_factory
        self.pool = pool
        self.base_path = base_path.rstrip("/")
        self.max_workspaces_per_task = max_workspaces_per_task
        self.orphan_cleanup_hours = orphan_cleanup_hours
        self._cache: dict[str, WorkspaceInfo] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _cache_key(task_id: str) -> str:
        return f"{task_id}:primary"

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        return lock

    async def _load_primary(self, session: AsyncSession, task_id: str) -> TaskWorkspace | None:
        result = await session.execute(
            select(TaskWorkspace)
            .where(
                TaskWorkspace.task_id == task_id,
                TaskWorkspace.is_primary.is_(True),
                TaskWorkspace.status == "active",
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_or_create_workspace(
        self,
        task_id: str,
        options: WorkspaceOptions | None = None,
    ) -> WorkspaceInfo:
        """Return the task's primary workspace, creating one when needed.

        ``is_new`` on the result tells the caller whether the remote
        directory still has to be prepared.
        """
        options = options or WorkspaceOptions()
        key = self._cache_key(task_id)

        async with self._lock_for(task_id):
            if not options.force_new:
                cached = self._cache.get(key)
                if cached is not None:
                    return replace(cached, is_new=False)

            async with self.session_factory() as session:
                existing = await self._load_primary(session, task_id)
                if existing is not None and not options.force_new:
                    info = WorkspaceInfo.from_row(existing)
                    self._cache[key] = info
                    return info

                active_count = await session.scalar(
                    select(func.count())
                    .select_from(TaskWorkspace)
                    .where(TaskWorkspace.task_id == task_id, TaskWorkspace.status == "active")
                )
                if active_count >= self.max_workspaces_per_task and existing is not None:
                    logger.warning(
                        "workspace_limit_reached",
                        task_id=task_id,
                        active=active_count,
                        limit=self.max_workspaces_per_task,
                    )
                    info = WorkspaceInfo.from_row(existing)
                    self._cache[key] = info
                    return info

                name = generate_workspace_name(task_id, options.preferred_name)
                path = posixpath.join(self.base_path, name)
                taken = await session.scalar(
                    select(TaskWorkspace.id).where(
                        TaskWorkspace.task_id == task_id,
                        TaskWorkspace.workspace_path == path,
                    )
                )
                if taken is not None:
                    name = f"{name}-{_timestamp_suffix()}"
                    path = posixpath.join(self.base_path, name)

                # Demote and insert commit together
                await session.execute(
                    update(TaskWorkspace)
                    .where(TaskWorkspace.task_id == task_id, TaskWorkspace.is_primary.is_(True))
                    .values(is_primary=False)
                )
                row = TaskWorkspace(
                    task_id=task_id,
                    workspace_path=path,
                    workspace_name=name,
                    is_primary=True,
                    status="active",
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)

            info = WorkspaceInfo.from_row(row, is_new=True)
            self._cache[key] = replace(info, is_new=False)
            logger.info(
                "workspace_created",
                task_id=task_id,
                path=path,
                replaced=existing.workspace_path if existing is not None else None,
            )
            return info

    async def get_task_workspace(self, task_id: str) -> WorkspaceInfo | None:
        """Primary workspace for a task without creating one."""
        key = self._cache_key(task_id)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        async with self.session_factory() as session:
            row = await self._load_primary(session, task_id)
        if row is None:
            return None
        info = WorkspaceInfo.from_row(row)
        self._cache[key] = info
        return info

    async def get_all_task_workspaces(self, task_id: str) -> list[WorkspaceInfo]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskWorkspace)
                .where(TaskWorkspace.task_id == task_id)
                .order_by(TaskWorkspace.created_at.desc(), TaskWorkspace.id.desc())
            )
            return [WorkspaceInfo.from_row(row) for row in result.scalars().all()]

    async def register_github_repo(
        self,
        task_id: str,
        repo_url: str,
        repo_name: str | None = None,
    ) -> bool:
        """Bind a remote repository to the task's primary workspace.

        Returns False when the task has no active primary.
        """
        if repo_name is None:
            repo_name = repo_url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
        async with self.session_factory() as session:
            row = await self._load_primary(session, task_id)
            if row is None:
                logger.warning("register_repo_no_workspace", task_id=task_id)
                return False
            row.github_repo_url = repo_url
            row.github_repo_name = repo_name
            await session.commit()

        key = self._cache_key(task_id)
        cached = self._cache.get(key)
        if cached is not None and cached.path == row.workspace_path:
            self._cache[key] = replace(cached, github_repo_url=repo_url, github_repo_name=repo_name)
        logger.info("workspace_repo_registered", task_id=task_id, repo_name=repo_name)
        return True

    async def archive_workspace(self, task_id: str, workspace_path: str | None = None) -> int:
        """Mark the task's active workspace(s) archived. Returns rows changed."""
        stmt = update(TaskWorkspace).where(
            TaskWorkspace.task_id == task_id,
            TaskWorkspace.status == "active",
        )
        if workspace_path is not None:
            stmt = stmt.where(TaskWorkspace.workspace_path == workspace_path)
        async with self.session_factory() as session:
            result = await session.execute(stmt.values(status="archived"))
            await session.commit()
        self._cache.pop(self._cache_key(task_id), None)
        logger.info("workspace_archived", task_id=task_id, path=workspace_path, count=result.rowcount)
        return result.rowcount

    async def get_orphaned_workspaces(self) -> list[WorkspaceInfo]:
        """Active workspaces whose task failed more than ``orphan_cleanup_hours`` ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=self.orphan_cleanup_hours)
        async with self.session_factory() as session:
            result = await session.execute(
                select(TaskWorkspace)
                .join(AgentTask, TaskWorkspace.task_id == AgentTask.agent_id)
                .where(
                    AgentTask.status == "failed",
                    AgentTask.completed_at.is_not(None),
                    AgentTask.completed_at < cutoff,
                    TaskWorkspace.status == "active",
                )
            )
            return [WorkspaceInfo.from_row(row) for row in result.scalars().all()]

    async def cleanup_orphaned_workspaces(self) -> OrphanCleanupReport:
        report = OrphanCleanupReport()
        orphans = await self.get_orphaned_workspaces()
        for ws in orphans:
            try:
                await self.delete_workspace_directory(ws.path)
                async with self.session_factory() as session:
                    await session.execute(
                        update(TaskWorkspace)
                        .where(TaskWorkspace.id == ws.id)
                        .values(status="deleted", is_primary=False)
                    )
                    await session.commit()
                cached = self._cache.get(self._cache_key(ws.task_id))
                if cached is not None and cached.path == ws.path:
                    self._cache.pop(self._cache_key(ws.task_id), None)
                report.cleaned += 1
                logger.info("orphan_workspace_cleaned", task_id=ws.task_id, path=ws.path)
            except UnsafeWorkspacePathError as e:
                report.errors += 1
                logger.error("orphan_workspace_refused", task_id=ws.task_id, path=ws.path, error=str(e))
            except Exception as e:
                report.errors += 1
                logger.error("orphan_workspace_cleanup_failed", task_id=ws.task_id, path=ws.path, error=str(e))

        if orphans:
            logger.info("orphan_cleanup_complete", cleaned=report.cleaned, errors=report.errors)
        return report

    async def delete_workspace_directory(self, path: str) -> None:
        """Remove a workspace directory on the remote host.

        The path check runs before anything is sent to the host.
        """
        safe = ensure_within_base(path, self.base_path)
        await self.pool.execute(sh("rm", "-rf", "--", safe), timeout=120, label="rm_workspace")

    async def workspace_exists(self, path: str) -> bool:
        result = await self.pool.execute(sh("test", "-d", path), timeout=30, check=False, label="test_workspace")
        return result.returncode == 0

    def clear_cache(self, task_id: str | None = None) -> None:
        if task_id is None:
            self._cache.clear()
        else:
            self._cache.pop(self._cache_key(task_id), None)
