"""SQLAlchemy models."""

from shared.models.agent_task import AgentTask
from shared.models.base import Base
from shared.models.task_workspace import TaskWorkspace

__all__ = [
    "AgentTask",
    "Base",
    "TaskWorkspace",
]
