"""Tool call and module manifest schemas for the ``/manifest`` and ``/execute`` endpoints."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

ParamType = Literal["string", "integer", "number", "boolean", "array", "object"]
PermissionLevel = Literal["guest", "user", "admin", "owner"]


class ToolParameter(BaseModel):
    """Parameter definition for a tool."""

    name: str
    type: ParamType
    description: str
    required: bool = True
    enum: list[str] | None = None


class ToolDefinition(BaseModel):
    """Definition of a single tool exposed by the orchestrator."""

    name: str  # "<module>.<action>", e.g. "remote_agent.run_task"
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)
    required_permission: PermissionLevel = "user"

    @field_validator("name")
    @classmethod
    def _qualified(cls, v: str) -> str:
        module, _, action = v.partition(".")
        if not module or not action or "." in action:
            raise ValueError(f"Tool name must be '<module>.<action>': {v!r}")
        return v

    @property
    def action(self) -> str:
        return self.name.split(".", 1)[1]


class ModuleManifest(BaseModel):
    """Manifest describing a module and its tools."""

    module_name: str
    description: str
    tools: list[ToolDefinition]


class ToolCall(BaseModel):
    """A tool call request. ``tool_name`` may be bare or module-qualified."""

    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None

    @property
    def action(self) -> str:
        return self.tool_name.rsplit(".", 1)[-1]


class ToolResult(BaseModel):
    """Result from a tool execution. Failures carry ``error`` and no ``result``."""

    tool_name: str
    success: bool
    result: Any = None
    error: str | None = None
