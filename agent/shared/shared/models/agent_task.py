"""Agent task model: one dispatched coding task and its terminal status."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class AgentTask(Base):
    __tablename__ = "agent_tasks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Logical task identifier (task_workspaces.task_id joins on this)
    agent_id: Mapped[str] = mapped_column(String(100), unique=True)
    container_id: Mapped[str | None] = mapped_column(String(100), default=None)
    task_description: Mapped[str] = mapped_column(Text)

    # Where progress notifications go
    platform: Mapped[str | None] = mapped_column(String, default=None)
    platform_channel_id: Mapped[str | None] = mapped_column(String, default=None)
    platform_thread_id: Mapped[str | None] = mapped_column(String, default=None)
    user_id: Mapped[str | None] = mapped_column(String, default=None)

    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | running | completed | failed
    result: Mapped[str | None] = mapped_column(Text, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)

    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    __table_args__ = (
        # Orphan detection filters on both
        Index("ix_agent_tasks_status_completed_at", "status", "completed_at"),
    )
