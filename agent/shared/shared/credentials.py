"""Credential resolution for agent containers and source-control pushes.

Values resolved here are only ever handed to
``SSHConnectionPool.execute_with_secrets`` / the container secrets file.
They must never be logged or interpolated into a command string.
"""

from __future__ import annotations

from typing import Protocol

from shared.config import Settings


class CredentialProvider(Protocol):
    """Source of the secrets a remote run needs."""

    async def agent_env(self) -> dict[str, str]:
        """Environment for the coding-agent container (model key + SCM tokens)."""
        ...

    async def scm_env(self) -> dict[str, str]:
        """Environment for git / gh commands that talk to the remote forge."""
        ...


class SettingsCredentialProvider:
    """Resolve credentials from the process settings."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def has_scm_token(self) -> bool:
        return bool(self._settings.github_token)

    async def agent_env(self) -> dict[str, str]:
        env = {"CLAUDE_CODE_SKIP_PERMISSIONS": "true"}
        if self._settings.anthropic_api_key:
            env["ANTHROPIC_API_KEY"] = self._settings.anthropic_api_key
        env.update(await self.scm_env())
        return env

    async def scm_env(self) -> dict[str, str]:
        token = self._settings.github_token
        if not token:
            return {}
        return {"GITHUB_TOKEN": token, "GH_TOKEN": token}
