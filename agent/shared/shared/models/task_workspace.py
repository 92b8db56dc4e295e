"""Task workspace model: remote working directories bound to a task."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint, text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class TaskWorkspace(Base):
    __tablename__ = "task_workspaces"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(100), index=True)

    workspace_path: Mapped[str] = mapped_column(String(500))
    workspace_name: Mapped[str] = mapped_column(String(200))

    # Bound remote repository, if any
    github_repo_url: Mapped[str | None] = mapped_column(String(500), default=None)
    github_repo_name: Mapped[str | None] = mapped_column(String(200), default=None)

    is_primary: Mapped[bool] = mapped_column(Boolean, default=True)
    # Lifecycle: active → archived | deleted
    status: Mapped[str] = mapped_column(String(50), default="active", index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("task_id", "workspace_path", name="uq_task_workspace_path"),
        # At most one active primary per task
        Index(
            "uq_task_workspaces_one_primary",
            "task_id",
            unique=True,
            postgresql_where=text("is_primary AND status = 'active'"),
            sqlite_where=text("is_primary = 1 AND status = 'active'"),
        ),
    )
