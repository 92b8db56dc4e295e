"""Agent container lifecycle on the remote host.

``spawn_agent`` starts a detached, resource-capped container running the
coding agent, then follows its logs from a separate ssh process.  Log lines
are decoded into events, formatted, throttled and pushed to the caller's
notification sink.  The run's completion handle resolves to an
:class:`AgentResult` whose ``success`` is decided from the exit code *and*
the captured output, since the agent CLI can exit 0 after failing.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from modules.remote_agent.backoff import RetryExhaustedError
from modules.remote_agent.events import (
    AgentError,
    Completion,
    ToolInvocation,
    classify_raw_line,
    format_event,
    parse_stream_line,
)
from modules.remote_agent.ssh import RemoteCommandError, SSHConnectionPool, quote, sh
from modules.remote_agent.workspaces import ensure_within_base
from shared.config import Settings, parse_list
from shared.credentials import CredentialProvider

logger = structlog.get_logger()

NotifySink = Callable[[str], Awaitable[None]]

# Output that means the agent CLI failed even though the container exited 0
FAILURE_SIGNATURES = [
    re.compile(r"Error: When using --print, --output-format=stream-json requires --verbose", re.IGNORECASE),
    re.compile(r"Error: Missing required argument", re.IGNORECASE),
    re.compile(r"Error: Invalid option", re.IGNORECASE),
    re.compile(r"ANTHROPIC_API_KEY.*not set", re.IGNORECASE),
    re.compile(r"authentication failed", re.IGNORECASE),
    re.compile(r"rate limit exceeded", re.IGNORECASE),
    re.compile(r"Error: spawn", re.IGNORECASE),
    re.compile(r"ENOENT", re.IGNORECASE),
]

_CONTAINER_ID_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")
STATUS_BUFFER_CHARS = 50_000  # output tail kept per container for status queries
STARTUP_POLL_INTERVAL = 0.5
STOP_TIMEOUT = 60.0


class AgentTimeoutError(Exception):
    """The run exceeded its wall-clock timeout and the container was stopped."""

    def __init__(self, container_id: str, timeout: float) -> None:
        self.container_id = container_id
        self.timeout = timeout
        super().__init__(f"Container {container_id} timed out after {timeout}s")


@dataclass
class AgentResult:
    success: bool
    output: str
    container_id: str
    duration: float  # seconds
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False
    stopped: bool = False


ResultCallback = Callable[[AgentResult], Awaitable[None]]


@dataclass
class SpawnOptions:
    workspace_path: str | None = None
    context_files: list[str] = field(default_factory=list)
    requirements: list[str] = field(default_factory=list)
    max_iterations: int | None = None
    timeout: float | None = None  # seconds; defaults to settings.agent_default_timeout
    notify: NotifySink | None = None
    on_result: ResultCallback | None = None


@dataclass
class AgentRun:
    """Handle returned by ``spawn_agent``."""

    container_id: str
    task: asyncio.Task[AgentResult]

    async def wait(self) -> AgentResult:
        """Wait for the run to finish. Raises AgentTimeoutError on timeout."""
        return await self.task

    def done(self) -> bool:
        return self.task.done()


@dataclass
class AgentStatus:
    container_id: str
    running: bool
    status: str
    output: str | None = None
    error: str | None = None


@dataclass
class ContainerInfo:
    id: str
    name: str
    status: str
    created: str


@dataclass
class StopOutcome:
    container_id: str
    stream_killed: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class CleanupOutcome:
    removed: int = 0
    error: str | None = None


@dataclass
class ShutdownReport:
    streams_killed: int = 0
    containers_stopped: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class _RunState:
    container_id: str
    started_at: float
    lines: list[str] = field(default_factory=list)
    stopped: bool = False

    @property
    def output(self) -> str:
        return "".join(self.lines)


class NotificationThrottle:
    """Forward at most one message per ``min_interval`` seconds; drop the rest."""

    def __init__(
        self,
        sink: NotifySink | None,
        min_interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.min_interval = min_interval
        self.clock = clock
        self.dropped = 0
        self._last: float | None = None

    async def send(self, message: str) -> bool:
        if self.sink is None:
            return False
        now = self.clock()
        if self._last is not None and now - self._last < self.min_interval:
            self.dropped += 1
            return False
        self._last = now
        try:
            await self.sink(message)
        except Exception as e:
            logger.warning("notification_sink_failed", error=str(e))
            return False
        return True


def build_prompt(task: str, options: SpawnOptions) -> str:
    prompt = task
    if options.context_files:
        prompt += "\n\nContext files to reference:\n" + "\n".join(options.context_files)
    if options.requirements:
        prompt += "\n\nRequirements:\n" + "\n".join(f"- {r}" for r in options.requirements)
    if options.max_iterations:
        prompt += f"\n\nMax iterations: {options.max_iterations}"
    return prompt


async def read_full_line(stream: asyncio.StreamReader) -> bytes:
    """Read one newline-terminated line regardless of the reader's limit.

    Returns ``b""`` at EOF.  A final line without a newline is returned as is.
    """
    chunks: list[bytes] = []
    while True:
        try:
            chunks.append(await stream.readuntil(b"\n"))
            break
        except asyncio.LimitOverrunError as e:
            # Drain what is buffered and keep reading the same line
            chunks.append(await stream.read(e.consumed))
        except asyncio.IncompleteReadError as e:
            chunks.append(e.partial)
            break
    return b"".join(chunks)


def evaluate_run(
    output: str,
    exit_code: int | None,
    duration: float,
    min_lines: int = 5,
    min_seconds: float = 10.0,
) -> tuple[bool, str | None]:
    """Decide whether a finished run actually succeeded.

    Returns ``(success, diagnostic)``.  Checks, in order: non-zero exit,
    a known CLI failure signature in the output, and a run that produced
    fewer than ``min_lines`` lines in under ``min_seconds``.
    """
    if exit_code != 0:
        return False, f"Container exited with code {exit_code}"

    for pattern in FAILURE_SIGNATURES:
        match = pattern.search(output)
        if match:
            return False, f"Claude CLI error: {match.group(0)}"

    lines = [line for line in output.strip().split("\n") if line.strip()]
    if len(lines) < min_lines and duration < min_seconds:
        return False, "Agent completed too quickly with minimal output - likely failed"

    return True, None


def _validate_container_id(container_id: str) -> None:
    if not _CONTAINER_ID_PATTERN.match(container_id):
        raise ValueError(f"Invalid container id: {container_id!r}")


class ContainerManager:
    def __init__(
        self,
        pool: SSHConnectionPool,
        credentials: CredentialProvider,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.pool = pool
        self.credentials = credentials
        self.settings = settings
        self._clock = clock
        self.prefix = settings.agent_container_prefix
        self.image = settings.agent_image

        self._issued_ids: set[str] = set()
        self._runs: dict[str, _RunState] = {}
        self._tasks: dict[str, asyncio.Task[AgentResult]] = {}
        self._log_processes: dict[str, asyncio.subprocess.Process] = {}
        self._buffers: dict[str, str] = {}
        self._shut_down = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def active_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def is_streaming(self, container_id: str) -> bool:
        return container_id in self._log_processes

    def output_buffer(self, container_id: str) -> str | None:
        run = self._runs.get(container_id)
        if run is not None:
            return run.output[-STATUS_BUFFER_CHARS:]
        return self._buffers.get(container_id)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def _new_container_id(self) -> str:
        while True:
            container_id = f"{self.prefix}{int(time.time() * 1000)}-{secrets.token_hex(4)}"
            if container_id not in self._issued_ids:
                self._issued_ids.add(container_id)
                return container_id

    def _docker_run_command(self, container_id: str, prompt: str, env_keys: list[str], workspace_path: str | None) -> str:
        argv = ["docker", "run", "-d", "--name", container_id]
        # Bare "-e KEY" copies the value from the sourced secrets file
        for key in env_keys:
            argv += ["-e", key]
        if workspace_path:
            argv += ["-v", f"{workspace_path}:/workspace"]
        for mount in parse_list(self.settings.agent_tool_mounts):
            argv += ["-v", mount]
        argv += [
            "--pids-limit", str(self.settings.agent_pids_limit),
            "--memory", self.settings.agent_memory_limit,
            "--cpus", self.settings.agent_cpu_limit,
            self.image,
            prompt,
        ]
        return sh(*argv)

    async def spawn_agent(self, task_prompt: str, options: SpawnOptions | None = None) -> AgentRun:
        """Start an agent container and return its completion handle.

        Returns once the container has been started; output streaming,
        startup verification and result evaluation continue in the
        background task behind ``AgentRun.task``.
        """
        if self._shut_down:
            raise RuntimeError("Container manager is shut down")
        options = options or SpawnOptions()
        workspace_path = (
            ensure_within_base(options.workspace_path, self.settings.workspace_base_path)
            if options.workspace_path
            else None
        )
        container_id = self._new_container_id()
        prompt = build_prompt(task_prompt, options)
        timeout = options.timeout or self.settings.agent_default_timeout
        started_at = self._clock()

        env = await self.credentials.agent_env()
        command = self._docker_run_command(container_id, prompt, list(env), workspace_path)
        logger.info(
            "agent_container_starting",
            container_id=container_id,
            workspace=workspace_path,
            prompt_chars=len(prompt),
        )
        try:
            await self.pool.execute_with_secrets(command, env, timeout=120, label="docker_run")
        except (RemoteCommandError, OSError) as e:
            logger.error("agent_container_start_failed", container_id=container_id, error=str(e))
            result = AgentResult(
                success=False,
                output="",
                container_id=container_id,
                duration=self._clock() - started_at,
                error=f"Failed to start container: {e}",
            )
            await self._report(options, result)
            raise

        run = _RunState(container_id=container_id, started_at=started_at)
        self._runs[container_id] = run
        task = asyncio.create_task(self._supervise(run, options, timeout))
        self._tasks[container_id] = task
        task.add_done_callback(lambda _t, cid=container_id: self._tasks.pop(cid, None))
        logger.info("agent_container_started", container_id=container_id, timeout=timeout)
        return AgentRun(container_id=container_id, task=task)

    async def _report(self, options: SpawnOptions, result: AgentResult) -> None:
        if options.on_result is None:
            return
        try:
            await options.on_result(result)
        except Exception as e:
            logger.error("agent_result_callback_failed", container_id=result.container_id, error=str(e))

    async def _supervise(self, run: _RunState, options: SpawnOptions, timeout: float) -> AgentResult:
        throttle = NotificationThrottle(options.notify, self.settings.notification_min_interval)
        verify = asyncio.create_task(self.verify_startup(run.container_id))
        try:
            try:
                result = await asyncio.wait_for(self._follow(run, throttle), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("agent_timeout", container_id=run.container_id, timeout=timeout)
                await self.stop_agent(run.container_id)
                result = AgentResult(
                    success=False,
                    output=run.output,
                    container_id=run.container_id,
                    duration=self._clock() - run.started_at,
                    error=f"Container timed out after {timeout}s",
                    timed_out=True,
                )
                await self._report(options, result)
                raise AgentTimeoutError(run.container_id, timeout) from None
            except Exception as e:
                logger.error("agent_stream_failed", container_id=run.container_id, error=str(e))
                result = AgentResult(
                    success=False,
                    output=run.output,
                    container_id=run.container_id,
                    duration=self._clock() - run.started_at,
                    error=str(e),
                )
        finally:
            verify.cancel()
            self._buffers[run.container_id] = run.output[-STATUS_BUFFER_CHARS:]
            self._runs.pop(run.container_id, None)

        if throttle.dropped:
            logger.debug("agent_notifications_dropped", container_id=run.container_id, dropped=throttle.dropped)
        await self._report(options, result)
        return result

    async def verify_startup(self, container_id: str) -> bool:
        """Poll until the container is running or already exited.

        Only logs on failure; the log stream decides the outcome.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.agent_startup_timeout
        while loop.time() < deadline:
            try:
                status = await self._inspect_status(container_id, timeout=5)
            except (RemoteCommandError, RetryExhaustedError, OSError) as e:
                logger.debug("agent_startup_check_failed", container_id=container_id, error=str(e))
                status = None
            if status == "running":
                logger.info("agent_container_verified", container_id=container_id)
                return True
            if status in ("exited", "dead"):
                logger.warning("agent_container_exited_early", container_id=container_id, status=status)
                return True
            await asyncio.sleep(STARTUP_POLL_INTERVAL)
        logger.warning("agent_startup_unverified", container_id=container_id)
        return False

    async def _inspect_status(self, container_id: str, timeout: float | None = None) -> str:
        command = sh("docker", "inspect", "--format", "{{.State.Status}}", container_id)
        command += " 2>/dev/null || echo not_found"
        result = await self.pool.execute(command, timeout, retry=False, label="docker_inspect")
        return result.stdout.strip() or "not_found"

    async def _follow(self, run: _RunState, throttle: NotificationThrottle) -> AgentResult:
        container_id = run.container_id
        proc = await self.pool.open_stream(f"{sh('docker', 'logs', '-f', container_id)} 2>&1")
        self._log_processes[container_id] = proc
        try:
            assert proc.stdout is not None
            while True:
                raw = await read_full_line(proc.stdout)
                if not raw:
                    break
                line = raw.decode("utf-8", errors="replace")
                run.lines.append(line)
                await self._handle_line(container_id, line, throttle)
            await proc.wait()
        finally:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            if self._log_processes.get(container_id) is proc:
                del self._log_processes[container_id]

        duration = self._clock() - run.started_at
        output = run.output
        if run.stopped:
            return AgentResult(
                success=False,
                output=output,
                container_id=container_id,
                duration=duration,
                error="Agent was stopped",
                stopped=True,
            )

        exit_code = await self._container_exit_code(container_id, fallback=proc.returncode)
        await self._remove_container(container_id)

        success, error = evaluate_run(
            output,
            exit_code,
            duration,
            self.settings.min_output_lines,
            self.settings.min_runtime_seconds,
        )
        if success:
            logger.info("agent_completed", container_id=container_id, duration=round(duration, 1))
        else:
            logger.warning("agent_failed", container_id=container_id, exit_code=exit_code, error=error)
        return AgentResult(
            success=success,
            output=output,
            container_id=container_id,
            duration=duration,
            exit_code=exit_code,
            error=error,
        )

    async def _handle_line(self, container_id: str, line: str, throttle: NotificationThrottle) -> None:
        events = parse_stream_line(line)
        if events is None:
            message = classify_raw_line(line)
            if message:
                await throttle.send(message)
            return

        for event in events:
            if isinstance(event, ToolInvocation):
                logger.info("agent_tool_use", container_id=container_id, tool=event.name)
            elif isinstance(event, AgentError):
                logger.error("agent_reported_error", container_id=container_id, error=event.message[:500])
            elif isinstance(event, Completion):
                logger.info("agent_finished", container_id=container_id)
            message = format_event(event)
            if message:
                await throttle.send(message)

    async def _container_exit_code(self, container_id: str, fallback: int | None) -> int | None:
        try:
            result = await self.pool.execute(sh("docker", "wait", container_id), timeout=60, label="docker_wait")
            return int(result.stdout.strip().splitlines()[-1])
        except (RemoteCommandError, RetryExhaustedError, ValueError, IndexError) as e:
            logger.warning("agent_exit_code_unavailable", container_id=container_id, error=str(e))
            return fallback

    async def _remove_container(self, container_id: str) -> str | None:
        try:
            await self.pool.execute(
                f"{sh('docker', 'rm', '-f', container_id)} >/dev/null 2>&1 || true",
                timeout=STOP_TIMEOUT,
                retry=False,
                label="docker_rm",
            )
        except (RemoteCommandError, OSError) as e:
            logger.warning("agent_container_remove_failed", container_id=container_id, error=str(e))
            return str(e)
        return None

    # ------------------------------------------------------------------
    # Control and queries
    # ------------------------------------------------------------------

    async def stop_agent(self, container_id: str) -> StopOutcome:
        """Kill the log follower, then stop and remove the container.

        Best effort: failures are collected on the returned outcome.
        """
        _validate_container_id(container_id)
        outcome = StopOutcome(container_id=container_id)
        run = self._runs.get(container_id)
        if run is not None:
            run.stopped = True

        proc = self._log_processes.pop(container_id, None)
        if proc is not None:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            outcome.stream_killed = True

        try:
            await self.pool.execute(
                f"{sh('docker', 'stop', container_id)} >/dev/null 2>&1 || true",
                timeout=STOP_TIMEOUT,
                retry=False,
                label="docker_stop",
            )
        except (RemoteCommandError, OSError) as e:
            outcome.errors.append(f"stop: {e}")
        error = await self._remove_container(container_id)
        if error:
            outcome.errors.append(f"remove: {error}")

        logger.info("agent_stopped", container_id=container_id, errors=len(outcome.errors))
        return outcome

    async def get_agent_status(self, container_id: str) -> AgentStatus:
        _validate_container_id(container_id)
        try:
            status = await self._inspect_status(container_id, timeout=30)
        except (RemoteCommandError, OSError) as e:
            return AgentStatus(container_id, running=False, status="unknown", error=str(e))
        return AgentStatus(
            container_id,
            running=status == "running",
            status=status,
            output=self.output_buffer(container_id),
        )

    async def list_agents(self) -> list[ContainerInfo]:
        command = sh(
            "docker", "ps", "-a",
            "--filter", f"name={self.prefix}",
            "--format", "{{.ID}}|{{.Names}}|{{.Status}}|{{.CreatedAt}}",
        )
        try:
            result = await self.pool.execute(command, timeout=60, label="docker_ps")
        except (RemoteCommandError, RetryExhaustedError) as e:
            logger.error("list_agents_failed", error=str(e))
            return []
        agents = []
        for line in result.stdout.strip().splitlines():
            parts = line.split("|", 3)
            if len(parts) == 4:
                agents.append(ContainerInfo(*parts))
        return agents

    async def get_agent_logs(self, container_id: str, tail: int = 100) -> str:
        _validate_container_id(container_id)
        command = f"{sh('docker', 'logs', '--tail', str(int(tail)), container_id)} 2>&1"
        result = await self.pool.execute(command, timeout=60, label="docker_logs")
        return result.stdout

    async def cleanup_containers(self) -> CleanupOutcome:
        """Remove exited agent containers in bulk."""
        list_cmd = sh(
            "docker", "ps", "-aq",
            "--filter", f"name={self.prefix}",
            "--filter", "status=exited",
            "--filter", "status=dead",
        )
        try:
            result = await self.pool.execute(list_cmd, timeout=60, label="docker_ps_exited")
            ids = result.stdout.split()
            if ids:
                await self.pool.execute(sh("docker", "rm", *ids), timeout=120, retry=False, label="docker_rm_bulk")
        except (RemoteCommandError, RetryExhaustedError) as e:
            logger.error("container_cleanup_failed", error=str(e))
            return CleanupOutcome(error=str(e))
        logger.info("containers_cleaned", removed=len(ids))
        return CleanupOutcome(removed=len(ids))

    async def build_image(self) -> bool:
        command = (
            f"cd {quote(self.settings.agent_build_dir)} && "
            f"{sh('docker', 'build', '-f', 'Dockerfile.claude-code', '-t', self.image, '.')}"
        )
        try:
            await self.pool.execute(command, timeout=1800, retry=False, label="docker_build")
        except (RemoteCommandError, OSError) as e:
            logger.error("agent_image_build_failed", image=self.image, error=str(e))
            return False
        logger.info("agent_image_built", image=self.image)
        return True

    async def image_exists(self) -> bool:
        result = await self.pool.execute(sh("docker", "images", "-q", self.image), timeout=60, label="docker_images")
        return bool(result.stdout.strip())

    async def send_to_agent(self, container_id: str, message: str) -> bool:
        """Headless agents take no further input once started."""
        logger.warning("send_to_agent_unsupported", container_id=container_id)
        return False

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> ShutdownReport:
        """Drain everything. Safe to call more than once."""
        report = ShutdownReport()
        if self._shut_down:
            return report
        self._shut_down = True
        logger.info("container_manager_shutting_down", active=self.active_count)

        for run in self._runs.values():
            run.stopped = True
        for container_id, proc in list(self._log_processes.items()):
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
            report.streams_killed += 1
        self._log_processes.clear()

        try:
            running = [a for a in await self.list_agents() if a.status.startswith("Up")]
        except Exception as e:
            report.errors.append(f"list: {e}")
            running = []
        outcomes = await asyncio.gather(
            *(self.stop_agent(agent.name) for agent in running), return_exceptions=True
        )
        for agent, outcome in zip(running, outcomes):
            if isinstance(outcome, BaseException):
                report.errors.append(f"{agent.name}: {outcome}")
            elif outcome.errors:
                report.errors.extend(f"{agent.name}: {err}" for err in outcome.errors)
            else:
                report.containers_stopped += 1

        pending = [task for task in self._tasks.values() if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=5)
            for task in still_running:
                task.cancel()

        await self.pool.close()
        self._runs.clear()
        self._tasks.clear()
        self._buffers.clear()
        logger.info(
            "container_manager_shut_down",
            streams_killed=report.streams_killed,
            containers_stopped=report.containers_stopped,
            errors=len(report.errors),
        )
        return report
