"""Pydantic schemas for the orchestrator service."""

from shared.schemas.common import HealthResponse
from shared.schemas.notifications import Notification
from shared.schemas.tools import (
    ModuleManifest,
    ToolCall,
    ToolDefinition,
    ToolParameter,
    ToolResult,
)

__all__ = [
    "HealthResponse",
    "ModuleManifest",
    "Notification",
    "ToolCall",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
]
