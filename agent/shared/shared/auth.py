"""Bearer-token check for the remote agent HTTP surface.

The chat bots that dispatch tasks share ``SERVICE_AUTH_TOKEN`` with this
service and send it as ``Authorization: Bearer <token>``.  With no token
configured every request is accepted (local development).
"""

from __future__ import annotations

import hmac

import structlog
from fastapi import HTTPException, Request

from shared.config import get_settings

logger = structlog.get_logger()

_SCHEME = "bearer"


def bearer_token(header: str) -> str | None:
    """Extract the credential from an ``Authorization`` header value."""
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != _SCHEME or not token.strip():
        return None
    return token.strip()


async def require_service_auth(request: Request) -> None:
    """FastAPI dependency guarding ``/manifest`` and ``/execute``."""
    expected = get_settings().service_auth_token
    if not expected:
        logger.debug("service_auth_disabled", path=request.url.path)
        return

    token = bearer_token(request.headers.get("authorization", ""))
    if token is None:
        raise HTTPException(status_code=401, detail="Missing service auth token")

    if not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning(
            "service_auth_failed",
            path=request.url.path,
            remote=request.client.host if request.client else "unknown",
        )
        raise HTTPException(status_code=401, detail="Invalid service auth token")
