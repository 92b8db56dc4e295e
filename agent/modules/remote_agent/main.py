"""Remote agent module: FastAPI service."""

from __future__ import annotations

import asyncio

import structlog
from fastapi import Depends, FastAPI

from modules.remote_agent.context import RemoteAgentContext, build_context
from modules.remote_agent.manifest import MANIFEST
from modules.remote_agent.tools import RemoteAgentTools
from shared.auth import require_service_auth
from shared.config import get_settings
from shared.database import get_session_factory
from shared.redis import create_redis
from shared.schemas.common import HealthResponse
from shared.schemas.tools import ModuleManifest, ToolCall, ToolResult

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Remote Agent Module", version="1.0.0")

context: RemoteAgentContext | None = None
tools: RemoteAgentTools | None = None
_cleanup_task: asyncio.Task | None = None

# Only run_task routes notifications; strip chat context from everything else
_PLATFORM_KEYS = ("platform", "platform_channel_id", "platform_thread_id", "platform_server_id", "conversation_id")


async def orphan_cleanup_loop(ctx: RemoteAgentContext, interval: int) -> None:
    """Reclaim workspaces of failed, aged-out tasks every ``interval`` seconds."""
    while True:
        try:
            await asyncio.sleep(interval)
            report = await ctx.registry.cleanup_orphaned_workspaces()
            if report.cleaned or report.errors:
                logger.info("orphan_cleanup_loop_pass", cleaned=report.cleaned, errors=report.errors)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("orphan_cleanup_loop_error", error=str(e))


@app.on_event("startup")
async def startup() -> None:
    global context, tools, _cleanup_task
    settings = get_settings()
    context = build_context(settings, get_session_factory(), redis=create_redis(settings.redis_url))
    tools = RemoteAgentTools(context)

    _cleanup_task = asyncio.create_task(
        orphan_cleanup_loop(context, settings.orphan_cleanup_interval_seconds)
    )
    logger.info("remote_agent_module_ready", remote_host=settings.remote_host)


@app.on_event("shutdown")
async def shutdown() -> None:
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        try:
            await _cleanup_task
        except asyncio.CancelledError:
            pass
    _cleanup_task = None
    if context is not None:
        report = await context.shutdown()
        logger.info(
            "remote_agent_module_shutdown",
            streams_killed=report.streams_killed,
            containers_stopped=report.containers_stopped,
            errors=report.errors,
        )


@app.get("/manifest", response_model=ModuleManifest)
async def manifest(_=Depends(require_service_auth)) -> ModuleManifest:
    return MANIFEST


@app.post("/execute", response_model=ToolResult)
async def execute(call: ToolCall, _=Depends(require_service_auth)) -> ToolResult:
    if tools is None:
        return ToolResult(tool_name=call.tool_name, success=False, error="Module not ready")

    try:
        tool_name = call.action
        args = dict(call.arguments)
        if call.user_id:
            args["user_id"] = call.user_id
        if tool_name != "run_task":
            for key in _PLATFORM_KEYS:
                args.pop(key, None)
        else:
            args.pop("platform_server_id", None)
            args.pop("conversation_id", None)

        if tool_name == "run_task":
            result = await tools.run_task(**args)
        elif tool_name == "stop_agent":
            result = await tools.stop_agent(**args)
        elif tool_name == "agent_status":
            result = await tools.agent_status(**args)
        elif tool_name == "list_agents":
            result = await tools.list_agents(**args)
        elif tool_name == "agent_logs":
            result = await tools.agent_logs(**args)
        elif tool_name == "cleanup_containers":
            result = await tools.cleanup_containers(**args)
        elif tool_name == "list_workspaces":
            result = await tools.list_workspaces(**args)
        elif tool_name == "archive_workspace":
            result = await tools.archive_workspace(**args)
        elif tool_name == "cleanup_workspaces":
            result = await tools.cleanup_workspaces(**args)
        elif tool_name == "push_workspace":
            result = await tools.push_workspace(**args)
        elif tool_name == "create_branch":
            result = await tools.create_branch(**args)
        else:
            return ToolResult(
                tool_name=call.tool_name,
                success=False,
                error=f"Unknown tool: {call.tool_name}",
            )
        return ToolResult(tool_name=call.tool_name, success=True, result=result)
    except Exception as e:
        logger.error("tool_execution_error", tool=call.tool_name, error=str(e), exc_info=True)
        return ToolResult(tool_name=call.tool_name, success=False, error=str(e))


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    if context is None:
        return HealthResponse(status="starting")
    return HealthResponse(
        status="ok",
        remote_pool=context.pool.state.value,
        active_agents=context.containers.active_count,
    )
