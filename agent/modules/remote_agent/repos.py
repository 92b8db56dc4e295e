"""Git repository helpers operating on remote workspace directories.

Forge tokens never appear on a command line: commands that talk to the
forge run through ``execute_with_secrets`` and authenticate with an inline
credential helper that reads ``$GITHUB_TOKEN`` from the environment.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass

import structlog

from modules.remote_agent.backoff import RetryExhaustedError
from modules.remote_agent.ssh import CommandResult, RemoteCommandError, SSHConnectionPool, quote, sh
from modules.remote_agent.workspaces import ensure_within_base
from shared.config import Settings
from shared.credentials import CredentialProvider

logger = structlog.get_logger()

_GIT_REF_PATTERN = re.compile(r"^[a-zA-Z0-9._/:\-]+$")
_WORKSPACE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_GITHUB_URL_PATTERN = re.compile(r"https://github\.com/[^\s]+")

CREDENTIAL_HELPER = '!f() { echo username=x-access-token; echo "password=$GITHUB_TOKEN"; }; f'
DEFAULT_COMMIT_MESSAGE = "Update from Claude Agent"
GIT_TIMEOUT = 300.0


def _validate_git_ref(value: str, label: str) -> None:
    """Reject values that could be used for command injection."""
    if not value or value.startswith("-") or not _GIT_REF_PATTERN.match(value):
        raise ValueError(f"Invalid {label}: {value!r}")


@dataclass
class RepoResult:
    success: bool
    path: str | None = None
    output: str = ""
    error: str | None = None
    url: str | None = None
    action: str | None = None  # cloned | pulled | created | pushed | branched | deleted
    hint: str | None = None


@dataclass
class RemoteWorkspace:
    name: str
    path: str
    has_git: bool
    remote_url: str | None = None


def _push_hint(error: str) -> str | None:
    error_lower = error.lower()
    if "rejected" in error_lower:
        return "Push was rejected. The remote branch has diverging commits; rebase or push with force."
    if "authentication failed" in error_lower or "permission denied" in error_lower:
        return "Authentication failed. Check the configured GITHUB_TOKEN."
    if "could not read from remote" in error_lower:
        return "Cannot reach the remote repository. Check the remote URL and network access."
    return None


class RepositoryOperations:
    def __init__(
        self,
        pool: SSHConnectionPool,
        credentials: CredentialProvider,
        base_path: str,
        git_author_name: str = "Claude Agent",
        git_author_email: str = "claude@agentflow.ai",
    ) -> None:
        self.pool = pool
        self.credentials = credentials
        self.base_path = base_path.rstrip("/")
        self.git_author_name = git_author_name
        self.git_author_email = git_author_email

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        pool: SSHConnectionPool,
        credentials: CredentialProvider,
    ) -> RepositoryOperations:
        return cls(
            pool,
            credentials,
            settings.workspace_base_path,
            git_author_name=settings.git_author_name,
            git_author_email=settings.git_author_email,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def workspace_path(self, name: str) -> str:
        """Absolute remote path for workspace ``name``."""
        if not _WORKSPACE_NAME_PATTERN.match(name):
            raise ValueError(f"Invalid workspace name: {name!r}")
        return ensure_within_base(posixpath.join(self.base_path, name), self.base_path)

    def resolve(self, path_or_name: str) -> str:
        if path_or_name.startswith("/"):
            return ensure_within_base(path_or_name, self.base_path)
        return self.workspace_path(path_or_name)

    def _git(self, *args: str, authenticated: bool = False) -> str:
        """Render a git invocation, with identity and optionally the token helper."""
        argv = [
            "git",
            "-c", f"user.name={self.git_author_name}",
            "-c", f"user.email={self.git_author_email}",
        ]
        if authenticated:
            # The empty value resets any helpers from the host's git config
            argv += ["-c", "credential.helper=", "-c", f"credential.helper={CREDENTIAL_HELPER}"]
        return sh(*argv, *args)

    async def _run_authenticated(self, command: str, label: str, timeout: float = GIT_TIMEOUT) -> CommandResult:
        env = await self.credentials.scm_env()
        if env:
            return await self.pool.execute_with_secrets(command, env, timeout, label=label)
        # Public remotes still work without a token
        return await self.pool.execute(command, timeout, retry=False, label=label)

    async def _has_repo(self, path: str) -> bool:
        result = await self.pool.execute(
            sh("test", "-d", posixpath.join(path, ".git")), timeout=30, check=False, label="test_git_dir",
        )
        return result.returncode == 0

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def clone(
        self,
        repo_url: str,
        target: str,
        *,
        branch: str | None = None,
        depth: int | None = None,
    ) -> RepoResult:
        """Clone ``repo_url`` into ``target``, or pull if it is already a repository."""
        path = self.resolve(target)
        if branch:
            _validate_git_ref(branch, "branch")
        if repo_url.startswith("-"):
            raise ValueError(f"Invalid repository URL: {repo_url!r}")

        try:
            if await self._has_repo(path):
                result = await self._run_authenticated(
                    f"cd {quote(path)} && {self._git('pull', '--ff-only', authenticated=True)}",
                    label="git_pull",
                )
                logger.info("repo_pulled", path=path)
                return RepoResult(success=True, path=path, output=result.stdout, action="pulled")

            args = ["clone"]
            if depth:
                args += ["--depth", str(int(depth))]
            if branch:
                args += ["--branch", branch]
            args += ["--", repo_url, path]
            clone_cmd = self._git(*args, authenticated=True)
            identity = (
                f"{sh('git', '-C', path, 'config', 'user.email', self.git_author_email)} && "
                f"{sh('git', '-C', path, 'config', 'user.name', self.git_author_name)}"
            )
            result = await self._run_authenticated(f"{clone_cmd} && {identity}", label="git_clone")
        except (RemoteCommandError, RetryExhaustedError) as e:
            logger.error("repo_clone_failed", path=path, error=str(e))
            return RepoResult(success=False, path=path, error=str(e))

        logger.info("repo_cloned", path=path, branch=branch, shallow=bool(depth))
        return RepoResult(success=True, path=path, output=result.stdout + result.stderr, action="cloned")

    async def create_workspace(
        self,
        name: str,
        *,
        init_git: bool = True,
        create_remote: bool = False,
        visibility: str = "private",
    ) -> RepoResult:
        """Create an empty workspace directory, optionally a repo and a forge remote."""
        path = self.workspace_path(name)
        if visibility not in ("private", "public"):
            raise ValueError(f"Invalid visibility: {visibility!r}")

        try:
            await self.pool.execute(sh("mkdir", "-p", "--", path), timeout=30, label="mkdir_workspace")
            if not init_git:
                logger.info("workspace_dir_created", path=path)
                return RepoResult(success=True, path=path, action="created")

            init = " && ".join([
                f"cd {quote(path)}",
                "{ [ -d .git ] || git init -q -b main; }",
                sh("git", "config", "user.email", self.git_author_email),
                sh("git", "config", "user.name", self.git_author_name),
                f"{{ [ -f README.md ] || printf '# %s\\n' {quote(name)} > README.md; }}",
                "git add -A",
                f"{{ git diff --cached --quiet || {sh('git', 'commit', '-q', '-m', 'Initial commit')}; }}",
            ])
            await self.pool.execute(init, timeout=60, retry=False, label="git_init")

            url: str | None = None
            if create_remote:
                env = await self.credentials.scm_env()
                if not env:
                    logger.warning("workspace_remote_skipped", path=path, reason="no_token")
                    return RepoResult(
                        success=True,
                        path=path,
                        action="created",
                        hint="No GITHUB_TOKEN configured; remote repository not created.",
                    )
                command = (
                    f"cd {quote(path)} && "
                    f"{sh('gh', 'repo', 'create', name, f'--{visibility}', '--source=.', '--remote=origin')} && "
                    f"{self._git('push', '-u', 'origin', 'HEAD', authenticated=True)}"
                )
                result = await self.pool.execute_with_secrets(command, env, GIT_TIMEOUT, label="gh_repo_create")
                match = _GITHUB_URL_PATTERN.search(result.stdout + "\n" + result.stderr)
                url = match.group(0).rstrip(".") if match else None
        except (RemoteCommandError, RetryExhaustedError) as e:
            logger.error("workspace_create_failed", path=path, error=str(e))
            return RepoResult(success=False, path=path, error=str(e))

        logger.info("workspace_repo_created", path=path, remote=url is not None)
        return RepoResult(success=True, path=path, url=url, action="created")

    async def push_workspace(
        self,
        target: str,
        *,
        message: str = DEFAULT_COMMIT_MESSAGE,
        branch: str = "main",
        force: bool = False,
    ) -> RepoResult:
        """Stage and commit pending changes, then push ``branch`` to origin."""
        path = self.resolve(target)
        _validate_git_ref(branch, "branch")

        try:
            status = await self.pool.execute(
                f"cd {quote(path)} && git status --porcelain", timeout=60, label="git_status",
            )
            if status.stdout.strip():
                await self.pool.execute(
                    f"cd {quote(path)} && git add -A && {self._git('commit', '-q', '-m', message)}",
                    timeout=60,
                    retry=False,
                    label="git_commit",
                )
            push_args = ["push"]
            if force:
                push_args.append("--force")
            push_args += ["origin", branch]
            result = await self._run_authenticated(
                f"cd {quote(path)} && {self._git(*push_args, authenticated=True)}",
                label="git_push",
            )
        except (RemoteCommandError, RetryExhaustedError) as e:
            error = str(e)
            logger.error("workspace_push_failed", path=path, branch=branch, error=error)
            return RepoResult(success=False, path=path, error=error, hint=_push_hint(error))

        # Git push writes progress to stderr even on success
        output = (result.stdout.strip() + "\n" + result.stderr.strip()).strip()
        logger.info("workspace_pushed", path=path, branch=branch, force=force)
        return RepoResult(success=True, path=path, output=output, action="pushed")

    async def create_branch(self, target: str, branch: str, *, push: bool = True) -> RepoResult:
        """Create and check out ``branch``; publish it to origin when ``push`` is set."""
        path = self.resolve(target)
        _validate_git_ref(branch, "branch")

        try:
            await self.pool.execute(
                f"cd {quote(path)} && {sh('git', 'checkout', '-b', branch)}",
                timeout=60,
                retry=False,
                label="git_checkout_branch",
            )
            output = ""
            if push:
                result = await self._run_authenticated(
                    f"cd {quote(path)} && {self._git('push', '-u', 'origin', branch, authenticated=True)}",
                    label="git_push_branch",
                )
                output = (result.stdout.strip() + "\n" + result.stderr.strip()).strip()
        except (RemoteCommandError, RetryExhaustedError) as e:
            error = str(e)
            logger.error("branch_create_failed", path=path, branch=branch, error=error)
            return RepoResult(success=False, path=path, error=error, hint=_push_hint(error))

        logger.info("branch_created", path=path, branch=branch, pushed=push)
        return RepoResult(success=True, path=path, output=output, action="branched")

    async def list_workspaces(self) -> list[RemoteWorkspace]:
        """Directories under the workspace root with their git remote, if any."""
        script = (
            f"cd {quote(self.base_path)} 2>/dev/null || exit 0; "
            "for d in */; do "
            '[ -d "$d" ] || continue; n="${d%/}"; '
            'if [ -d "$n/.git" ]; then '
            'printf "%s|1|%s\\n" "$n" "$(git -C "$n" remote get-url origin 2>/dev/null)"; '
            'else printf "%s|0|\\n" "$n"; fi; '
            "done"
        )
        result = await self.pool.execute(script, timeout=60, label="list_workspaces")
        workspaces: list[RemoteWorkspace] = []
        for line in result.stdout.splitlines():
            parts = line.split("|", 2)
            if len(parts) != 3 or not parts[0]:
                continue
            name, has_git, remote = parts
            workspaces.append(
                RemoteWorkspace(
                    name=name,
                    path=posixpath.join(self.base_path, name),
                    has_git=has_git == "1",
                    remote_url=remote or None,
                )
            )
        return workspaces

    async def delete_workspace(self, name: str) -> RepoResult:
        path = self.workspace_path(name)
        try:
            await self.pool.execute(sh("rm", "-rf", "--", path), timeout=120, label="rm_workspace")
        except (RemoteCommandError, RetryExhaustedError) as e:
            logger.error("workspace_delete_failed", path=path, error=str(e))
            return RepoResult(success=False, path=path, error=str(e))
        logger.info("workspace_deleted", path=path)
        return RepoResult(success=True, path=path, action="deleted")
