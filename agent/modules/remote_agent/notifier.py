"""Relay agent progress to chat platforms over Redis pub/sub."""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog

from shared.schemas.notifications import Notification

logger = structlog.get_logger()


class RedisNotifier:
    """Publish notifications for one task to ``notifications:{platform}``.

    Instances are callable, so one can be handed to ``spawn_agent`` as the
    ``notify`` sink directly.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        platform: str,
        platform_channel_id: str,
        platform_thread_id: str | None = None,
        user_id: str | None = None,
        task_id: str | None = None,
    ) -> None:
        self.redis = redis
        self.platform = platform
        self.platform_channel_id = platform_channel_id
        self.platform_thread_id = platform_thread_id
        self.user_id = user_id
        self.task_id = task_id
        self.container_id: str | None = None

    @property
    def channel(self) -> str:
        return f"notifications:{self.platform}"

    async def __call__(self, message: str) -> None:
        notification = Notification(
            platform=self.platform,
            platform_channel_id=self.platform_channel_id,
            platform_thread_id=self.platform_thread_id,
            content=message,
            user_id=self.user_id,
            task_id=self.task_id,
            container_id=self.container_id,
        )
        await self.redis.publish(self.channel, notification.model_dump_json())
        logger.debug("notification_published", channel=self.channel, task_id=self.task_id)
