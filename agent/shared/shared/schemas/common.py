"""Common schemas used across services."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Service health check response.

    ``remote_pool`` reports the SSH control-connection state; a pool that is
    not ``ready`` only degrades performance, so it never flips ``status``.
    """

    status: str = "ok"
    remote_pool: str | None = None
    active_agents: int = 0
