"""Shared test fixtures for the agent test suite.

Provides mock database sessions, an in-memory SQLite session factory,
a scripted stand-in for the SSH connection pool and Redis mocks, so module
tests can run without a remote host or Docker infrastructure.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from modules.remote_agent.ssh import CommandResult, PoolState, RemoteCommandError
from shared.config import Settings
from shared.database import create_tables


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the common patterns used in tool code:
        session.execute(stmt) -> result
        session.add(obj)
        session.commit()
        session.refresh(obj)
    """
    session = AsyncMock()
    session.add = MagicMock()
    # Default: execute returns a result with no rows
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=default_result)
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


@pytest.fixture
async def sqlite_session_factory():
    """Real async session factory over a private in-memory SQLite database.

    Used where the behaviour under test lives in the queries themselves
    (joins, partial unique indexes, demote-then-insert).
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


# ---------------------------------------------------------------------------
# Redis mock
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_redis():
    """Mock async Redis client with common operations."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock()
    redis.delete = AsyncMock()
    redis.publish = AsyncMock()
    return redis


# ---------------------------------------------------------------------------
# Settings and credentials
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings isolated from the environment and any local .env file."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        remote_host="vps.test",
        workspace_base_path="/opt/agentflow/workspaces",
        anthropic_api_key="sk-ant-test-key",
        github_token="ghp_testtoken123",
        agent_startup_timeout=1.0,
        notification_min_interval=0.0,
        retry_base_delay=0.0,
    )


class FakeCredentials:
    def __init__(self, token: str | None = "ghp_testtoken123", api_key: str = "sk-ant-test-key") -> None:
        self.token = token
        self.api_key = api_key

    async def agent_env(self) -> dict[str, str]:
        env = {"CLAUDE_CODE_SKIP_PERMISSIONS": "true", "ANTHROPIC_API_KEY": self.api_key}
        env.update(await self.scm_env())
        return env

    async def scm_env(self) -> dict[str, str]:
        if not self.token:
            return {}
        return {"GITHUB_TOKEN": self.token, "GH_TOKEN": self.token}


@pytest.fixture
def credentials():
    return FakeCredentials()


# ---------------------------------------------------------------------------
# Remote host stand-in
# ---------------------------------------------------------------------------


class FakeLogProcess:
    """Stand-in for the ``docker logs -f`` ssh subprocess.

    Lines are fed to ``stdout`` on the running loop.  With ``hold_open`` the
    stream stays open after the last line until :meth:`finish` or
    :meth:`kill` is called.
    """

    def __init__(self, lines=(), hold_open: bool = False) -> None:
        self.stdout = asyncio.StreamReader()
        self.returncode = None
        self.killed = False
        self._exit_code = 0
        self._release = asyncio.Event()
        self._done = asyncio.Event()
        self._feeder = asyncio.get_running_loop().create_task(self._feed(list(lines), hold_open))

    async def _feed(self, lines, hold_open):
        for line in lines:
            await asyncio.sleep(0)
            self.stdout.feed_data((line + "\n").encode())
        if hold_open:
            await self._release.wait()
        self._exit(self._exit_code)

    def _exit(self, returncode: int) -> None:
        if self.returncode is None:
            self.returncode = returncode
            self.stdout.feed_eof()
            self._done.set()

    def finish(self, returncode: int = 0) -> None:
        """Let a held stream deliver its remaining lines and close."""
        self._exit_code = returncode
        self._release.set()

    def kill(self) -> None:
        self.killed = True
        self._feeder.cancel()
        self._exit(-9)

    async def wait(self):
        await self._done.wait()
        return self.returncode


class FakePool:
    """Scripted replacement for ``SSHConnectionPool``.

    Every command is recorded.  Responses are registered with :meth:`on`
    against a substring of the command; the most recent match wins and
    unmatched commands succeed with empty output.
    """

    def __init__(self) -> None:
        self.commands: list[str] = []
        self.secret_calls: list[tuple[str, dict[str, str]]] = []
        self.streams: list[FakeLogProcess] = []
        self.stream_lines: list[str] = []
        self.hold_streams = False
        self.state = PoolState.READY
        self.closed = False
        self._responses: list[tuple[str, object]] = []

    def on(self, fragment: str, stdout: str = "", returncode: int = 0, stderr: str = "", exc=None) -> None:
        self._responses.append((fragment, exc or CommandResult(stdout, stderr, returncode)))

    def _respond(self, command: str, check: bool, label: str | None) -> CommandResult:
        for fragment, response in reversed(self._responses):
            if fragment in command:
                if isinstance(response, BaseException):
                    raise response
                if check and response.returncode != 0:
                    raise RemoteCommandError(label or "cmd", response.returncode, response.stderr, response.stdout)
                return response
        return CommandResult("", "", 0)

    def ran(self, fragment: str) -> list[str]:
        return [c for c in self.commands if fragment in c]

    async def ensure_ready(self) -> bool:
        return True

    async def execute(self, command, timeout=None, *, retry=True, check=True, input=None, label=None, policy=None):
        self.commands.append(command)
        return self._respond(command, check, label)

    async def execute_with_secrets(self, command, secrets, timeout=None, *, check=True, label=None):
        self.commands.append(command)
        self.secret_calls.append((command, dict(secrets)))
        return self._respond(command, check, label)

    async def open_stream(self, command):
        self.commands.append(command)
        proc = FakeLogProcess(self.stream_lines, hold_open=self.hold_streams)
        self.streams.append(proc)
        return proc

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_pool():
    return FakePool()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Each result should be a MagicMock with the appropriate return values
    (e.g. scalar_one_or_none, scalars().all()).
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        # Fallback: return empty result
        fallback = MagicMock()
        fallback.scalar_one_or_none.return_value = None
        fallback.scalars.return_value.all.return_value = []
        return fallback

    return _side_effect
