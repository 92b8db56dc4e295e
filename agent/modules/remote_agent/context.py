"""Process-wide handle owning the pool, registry, repos and container manager."""

from __future__ import annotations

from dataclasses import dataclass

import redis.asyncio as aioredis
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.remote_agent.containers import ContainerManager, ShutdownReport
from modules.remote_agent.repos import RepositoryOperations
from modules.remote_agent.ssh import SSHConnectionPool
from modules.remote_agent.workspaces import WorkspaceRegistry
from shared.config import Settings
from shared.credentials import CredentialProvider, SettingsCredentialProvider
from shared.redis import close_redis

logger = structlog.get_logger()


@dataclass
class RemoteAgentContext:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    pool: SSHConnectionPool
    registry: WorkspaceRegistry
    repos: RepositoryOperations
    containers: ContainerManager
    redis: aioredis.Redis | None = None
    _closed: bool = False

    async def shutdown(self) -> ShutdownReport:
        """Drain containers, close the pool and Redis. Call once at process exit."""
        if self._closed:
            return ShutdownReport()
        self._closed = True
        report = await self.containers.shutdown()
        self.registry.clear_cache()
        await close_redis(self.redis)
        logger.info("remote_agent_context_closed")
        return report


def build_context(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    redis: aioredis.Redis | None = None,
    credentials: CredentialProvider | None = None,
    pool: SSHConnectionPool | None = None,
) -> RemoteAgentContext:
    """Wire up every component from ``settings``. Nothing connects until first use."""
    credentials = credentials or SettingsCredentialProvider(settings)
    pool = pool or SSHConnectionPool.from_settings(settings)
    registry = WorkspaceRegistry(
        session_factory,
        pool,
        settings.workspace_base_path,
        max_workspaces_per_task=settings.max_workspaces_per_task,
        orphan_cleanup_hours=settings.orphan_cleanup_hours,
    )
    return RemoteAgentContext(
        settings=settings,
        session_factory=session_factory,
        pool=pool,
        registry=registry,
        repos=RepositoryOperations.from_settings(settings, pool, credentials),
        containers=ContainerManager(pool, credentials, settings),
        redis=redis,
    )
