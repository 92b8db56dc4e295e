"""Remote command execution over a shared SSH ControlMaster connection.

One background ``ssh -N`` master process is kept alive per pool; every
command then multiplexes over its control socket instead of paying a full
handshake.  When the master is unavailable commands fall back to standalone
connections, so a broken pool only costs latency.
"""

from __future__ import annotations

import asyncio
import enum
import os
import re
import shlex
import time
import uuid
from dataclasses import dataclass

import structlog

from modules.remote_agent.backoff import DEFAULT_POLICY, RetryPolicy, with_backoff
from shared.config import Settings

logger = structlog.get_logger()

_ENV_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
STREAM_LIMIT = 1024 * 1024


def quote(value: str) -> str:
    """Escape one value for the remote POSIX shell."""
    return shlex.quote(value)


def sh(*argv: str) -> str:
    """Join ``argv`` into a single shell-safe command string."""
    return " ".join(quote(arg) for arg in argv)


class PoolState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class RemoteCommandError(Exception):
    """A remote command exited non-zero."""

    def __init__(self, label: str, returncode: int | None, stderr: str = "", stdout: str = "") -> None:
        self.label = label
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = (stderr or stdout).strip()[:500]
        super().__init__(f"{label} exited with code {returncode}: {detail}")


class RemoteCommandTimeout(RemoteCommandError):
    """A remote command exceeded its deadline and was killed."""

    def __init__(self, label: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(label, None, f"timed out after {timeout}s")


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    returncode: int


class SSHConnectionPool:
    """A lazily established SSH ControlMaster for one ``user@host``."""

    def __init__(
        self,
        host: str,
        user: str = "root",
        key_path: str = "",
        *,
        connect_timeout: int = 10,
        control_dir: str = "/tmp",
        control_persist: int = 300,
        init_timeout: float = 15.0,
        poll_interval: float = 0.5,
        retry_cooldown: float = 60.0,
        default_timeout: float = 300.0,
        policy: RetryPolicy = DEFAULT_POLICY,
    ) -> None:
        self.host = host
        self.user = user
        self.key_path = key_path
        self.connect_timeout = connect_timeout
        self.control_persist = control_persist
        self.init_timeout = init_timeout
        self.poll_interval = poll_interval
        self.retry_cooldown = retry_cooldown
        self.default_timeout = default_timeout
        self.policy = policy
        # Socket path unique per host and per orchestrator process
        self.control_path = os.path.join(control_dir, f"ssh-agentflow-{host}-{os.getpid()}")

        self._state = PoolState.UNINITIALIZED
        self._master: asyncio.subprocess.Process | None = None
        self._init_task: asyncio.Task[bool] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._failed_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> SSHConnectionPool:
        return cls(
            settings.remote_host,
            settings.remote_user,
            settings.ssh_key_path,
            connect_timeout=settings.ssh_connect_timeout,
            control_dir=settings.ssh_control_dir,
            control_persist=settings.ssh_control_persist,
            init_timeout=settings.ssh_pool_init_timeout,
            poll_interval=settings.ssh_pool_poll_interval,
            retry_cooldown=settings.ssh_pool_retry_cooldown,
            default_timeout=settings.default_command_timeout,
            policy=RetryPolicy.from_settings(settings),
        )

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def _base_options(self) -> list[str]:
        opts: list[str] = []
        if self.key_path:
            opts += ["-i", self.key_path]
        opts += [
            "-o", "StrictHostKeyChecking=no",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ServerAliveInterval=30",
            "-o", "ServerAliveCountMax=3",
        ]
        return opts

    def build_argv(self, command: str) -> list[str]:
        """Argv for running ``command`` remotely, multiplexed when the master is up."""
        argv = ["ssh", *self._base_options()]
        if self._state == PoolState.READY:
            argv += ["-o", f"ControlPath={self.control_path}"]
        argv += [self.target, command]
        return argv

    # ------------------------------------------------------------------
    # Master lifecycle
    # ------------------------------------------------------------------

    async def ensure_ready(self) -> bool:
        """Bring the master up if needed. Returns whether it is usable.

        Concurrent callers share a single initialization attempt.  After a
        failure, new attempts are suppressed for ``retry_cooldown`` seconds.
        """
        if self._state == PoolState.READY:
            return True
        if (
            self._state == PoolState.FAILED
            and time.monotonic() - self._failed_at < self.retry_cooldown
        ):
            return False
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self._establish())
        return await asyncio.shield(self._init_task)

    async def _establish(self) -> bool:
        self._state = PoolState.INITIALIZING
        logger.info("ssh_pool_initializing", host=self.host, control_path=self.control_path)
        proc: asyncio.subprocess.Process | None = None
        try:
            proc = await asyncio.create_subprocess_exec(
                "ssh", *self._base_options(),
                "-o", "ControlMaster=yes",
                "-o", f"ControlPath={self.control_path}",
                "-o", f"ControlPersist={self.control_persist}",
                "-N", self.target,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.init_timeout
            while loop.time() < deadline:
                if proc.returncode is not None:
                    stderr = (await proc.stderr.read()).decode(errors="replace") if proc.stderr else ""
                    raise RuntimeError(f"ssh master exited with code {proc.returncode}: {stderr.strip()}")
                if await self._check_master():
                    self._master = proc
                    self._state = PoolState.READY
                    self._watch_task = asyncio.create_task(self._watch_master(proc))
                    logger.info("ssh_pool_ready", host=self.host)
                    return True
                await asyncio.sleep(self.poll_interval)
            raise TimeoutError(f"ssh master not ready after {self.init_timeout}s")
        except Exception as e:
            self._state = PoolState.FAILED
            self._failed_at = time.monotonic()
            logger.warning("ssh_pool_init_failed", host=self.host, error=str(e))
            if proc is not None and proc.returncode is None:
                proc.kill()
                await proc.wait()
            return False

    async def _check_master(self) -> bool:
        proc = await asyncio.create_subprocess_exec(
            "ssh", "-o", f"ControlPath={self.control_path}", "-O", "check", self.target,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return proc.returncode == 0 or b"Master running" in stdout + stderr

    async def _watch_master(self, proc: asyncio.subprocess.Process) -> None:
        returncode = await proc.wait()
        if self._master is proc:
            logger.warning("ssh_master_exited", host=self.host, returncode=returncode)
            self._master = None
            self._state = PoolState.UNINITIALIZED

    async def close(self) -> None:
        """Tear down the master. Safe to call repeatedly."""
        if self._init_task is not None and not self._init_task.done():
            await asyncio.shield(self._init_task)
        master, self._master = self._master, None
        watch, self._watch_task = self._watch_task, None
        self._state = PoolState.UNINITIALIZED
        if watch is not None:
            watch.cancel()
        if master is None:
            return

        try:
            proc = await asyncio.create_subprocess_exec(
                "ssh", "-o", f"ControlPath={self.control_path}", "-O", "exit", self.target,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=5)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("ssh_pool_exit_failed", host=self.host, error=str(e))

        if master.returncode is None:
            master.kill()
            await master.wait()
        logger.info("ssh_pool_closed", host=self.host)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        *,
        retry: bool = True,
        check: bool = True,
        input: str | None = None,
        label: str | None = None,
        policy: RetryPolicy | None = None,
    ) -> CommandResult:
        """Run ``command`` on the remote host.

        Raises :class:`RemoteCommandError` on non-zero exit when ``check`` is
        set and :class:`RemoteCommandTimeout` when the deadline passes.  With
        ``retry`` the call goes through :func:`with_backoff`, so exhausted
        retries surface as ``RetryExhaustedError``.
        """
        label = label or command.split(" ", 1)[0]
        timeout = self.default_timeout if timeout is None else timeout

        async def attempt() -> CommandResult:
            await self.ensure_ready()
            return await self._run_once(command, timeout, check, input, label)

        if not retry:
            return await attempt()
        return await with_backoff(attempt, policy or self.policy, label=label)

    async def _run_once(
        self,
        command: str,
        timeout: float,
        check: bool,
        input: str | None,
        label: str,
    ) -> CommandResult:
        proc = await asyncio.create_subprocess_exec(
            *self.build_argv(command),
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout_b, stderr_b = await asyncio.wait_for(
                proc.communicate(input.encode() if input is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("remote_command_timeout", label=label, timeout=timeout)
            raise RemoteCommandTimeout(label, timeout) from None

        result = CommandResult(
            stdout=stdout_b.decode(errors="replace"),
            stderr=stderr_b.decode(errors="replace"),
            returncode=proc.returncode if proc.returncode is not None else -1,
        )
        if check and result.returncode != 0:
            raise RemoteCommandError(label, result.returncode, result.stderr, result.stdout)
        return result

    async def execute_with_secrets(
        self,
        command: str,
        secrets: dict[str, str],
        timeout: float | None = None,
        *,
        check: bool = True,
        label: str | None = None,
    ) -> CommandResult:
        """Run ``command`` with ``secrets`` exported into its environment.

        The values travel over ssh stdin into an owner-only temp file that
        the remote shell sources and a trap removes on exit, so they never
        appear in any argv.  Not retried: the command may not be idempotent.
        """
        for key, value in secrets.items():
            if not _ENV_KEY_PATTERN.match(key):
                raise ValueError(f"Invalid environment variable name: {key!r}")
            if "\0" in value:
                raise ValueError(f"Invalid value for {key}: contains NUL")

        env_file = f"/tmp/.agentflow-env-{uuid.uuid4().hex}"
        payload = "".join(f"{key}={quote(value)}\n" for key, value in secrets.items())
        quoted = quote(env_file)
        remove = quote(sh("rm", "-f", env_file))
        script = (
            f"umask 077; cat > {quoted} || exit 1; "
            f"trap {remove} EXIT; "
            f"umask 022; set -a; . {quoted}; set +a; "
            f"{command}"
        )
        label = label or command.split(" ", 1)[0]
        try:
            return await self.execute(
                script, timeout, retry=False, check=check, input=payload, label=label,
            )
        except RemoteCommandTimeout:
            # Killed before the trap could fire
            await self._remove_remote_file(env_file)
            raise

    async def _remove_remote_file(self, path: str) -> None:
        try:
            await self.execute(sh("rm", "-f", path), timeout=30, retry=False, check=False, label="rm_env_file")
        except (OSError, RemoteCommandError) as e:
            logger.warning("remote_env_file_cleanup_failed", error=str(e))

    async def open_stream(self, command: str) -> asyncio.subprocess.Process:
        """Start a long-running remote command with stdout+stderr piped together."""
        await self.ensure_ready()
        return await asyncio.create_subprocess_exec(
            *self.build_argv(command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            limit=STREAM_LIMIT,
        )
