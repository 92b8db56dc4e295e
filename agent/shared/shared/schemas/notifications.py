"""Notification schemas for streamed agent progress via Redis pub/sub."""

from __future__ import annotations

from pydantic import BaseModel


class Notification(BaseModel):
    """A progress message to relay to a chat channel."""

    platform: str  # "discord" | "telegram" | "slack"
    platform_channel_id: str  # where to send the message
    platform_thread_id: str | None = None  # optional thread
    content: str  # the message text
    user_id: str | None = None  # originating user (for logging)
    task_id: str | None = None  # logical task the message belongs to
    container_id: str | None = None  # agent container that produced it
