"""Tests for repository operations on remote workspaces.

Covers: ref validation, clone vs pull, workspace creation with and without
a forge remote, push and branch flows, and that tokens never appear in
any command string.
"""

from __future__ import annotations

import pytest

from modules.remote_agent.repos import RepositoryOperations, _push_hint, _validate_git_ref
from modules.remote_agent.workspaces import UnsafeWorkspacePathError
from tests.conftest import FakeCredentials

BASE = "/opt/agentflow/workspaces"
TOKEN = "ghp_testtoken123"


@pytest.fixture
def repos(fake_pool, credentials):
    return RepositoryOperations(fake_pool, credentials, BASE)


def _assert_no_token(pool):
    for command in pool.commands:
        assert TOKEN not in command


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidateGitRef:
    @pytest.mark.parametrize("ref", ["main", "feature/login-v2", "release-1.0", "fix_bug"])
    def test_valid(self, ref):
        _validate_git_ref(ref, "branch")

    @pytest.mark.parametrize("ref", ["", "--upload-pack=evil", "-b", "a b", "a;rm -rf /", "$(whoami)", "a`b`"])
    def test_invalid(self, ref):
        with pytest.raises(ValueError):
            _validate_git_ref(ref, "branch")


class TestPaths:
    def test_workspace_path(self, repos):
        assert repos.workspace_path("proj") == f"{BASE}/proj"

    @pytest.mark.parametrize("name", ["../etc", "a/b", "-rf", "", ".hidden"])
    def test_rejects_bad_names(self, repos, name):
        with pytest.raises(ValueError):
            repos.workspace_path(name)

    def test_resolve_absolute_must_be_under_base(self, repos):
        assert repos.resolve(f"{BASE}/proj") == f"{BASE}/proj"
        with pytest.raises(UnsafeWorkspacePathError):
            repos.resolve("/etc")


# ---------------------------------------------------------------------------
# Clone
# ---------------------------------------------------------------------------

class TestClone:
    @pytest.mark.asyncio
    async def test_fresh_clone_uses_secrets_channel(self, repos, fake_pool):
        fake_pool.on("test -d", returncode=1)

        result = await repos.clone("https://github.com/acme/widgets.git", f"{BASE}/w", branch="dev", depth=1)

        assert result.success is True
        assert result.action == "cloned"
        command, env = fake_pool.secret_calls[-1]
        assert "clone --depth 1 --branch dev -- https://github.com/acme/widgets.git" in command
        assert "credential.helper=" in command
        assert env["GITHUB_TOKEN"] == TOKEN
        _assert_no_token(fake_pool)

    @pytest.mark.asyncio
    async def test_existing_repo_is_pulled(self, repos, fake_pool):
        fake_pool.on("test -d", returncode=0)

        result = await repos.clone("https://github.com/acme/widgets.git", f"{BASE}/w")

        assert result.action == "pulled"
        assert "pull --ff-only" in fake_pool.secret_calls[-1][0]
        assert not fake_pool.ran("clone")

    @pytest.mark.asyncio
    async def test_without_token_runs_plain(self, fake_pool):
        repos = RepositoryOperations(fake_pool, FakeCredentials(token=None), BASE)
        fake_pool.on("test -d", returncode=1)

        result = await repos.clone("https://github.com/acme/public.git", "w")

        assert result.success is True
        assert fake_pool.secret_calls == []
        assert fake_pool.ran("clone")

    @pytest.mark.asyncio
    async def test_invalid_branch_rejected_before_any_command(self, repos, fake_pool):
        with pytest.raises(ValueError):
            await repos.clone("https://github.com/acme/w.git", "w", branch="--upload-pack=touch /tmp/x")
        assert fake_pool.commands == []

    @pytest.mark.asyncio
    async def test_failure_returns_result(self, repos, fake_pool):
        fake_pool.on("test -d", returncode=1)
        fake_pool.on("clone", returncode=128, stderr="fatal: repository not found")

        result = await repos.clone("https://github.com/acme/missing.git", "w")

        assert result.success is False
        assert "repository not found" in result.error


# ---------------------------------------------------------------------------
# Workspace creation
# ---------------------------------------------------------------------------

class TestCreateWorkspace:
    @pytest.mark.asyncio
    async def test_init_only(self, repos, fake_pool):
        result = await repos.create_workspace("proj")

        assert result.success is True
        assert result.url is None
        assert fake_pool.commands[0] == f"mkdir -p -- {BASE}/proj"
        assert "git init -q -b main" in fake_pool.commands[1]
        assert fake_pool.secret_calls == []

    @pytest.mark.asyncio
    async def test_with_remote_returns_url(self, repos, fake_pool):
        fake_pool.on("gh repo create", stdout="✓ Created repository acme/proj on GitHub\nhttps://github.com/acme/proj\n")

        result = await repos.create_workspace("proj", create_remote=True, visibility="public")

        assert result.url == "https://github.com/acme/proj"
        command, env = fake_pool.secret_calls[-1]
        assert "gh repo create proj --public --source=. --remote=origin" in command
        assert env["GH_TOKEN"] == TOKEN
        _assert_no_token(fake_pool)

    @pytest.mark.asyncio
    async def test_remote_skipped_without_token(self, fake_pool):
        repos = RepositoryOperations(fake_pool, FakeCredentials(token=None), BASE)

        result = await repos.create_workspace("proj", create_remote=True)

        assert result.success is True
        assert result.hint is not None
        assert not fake_pool.ran("gh repo create")

    @pytest.mark.asyncio
    async def test_invalid_visibility(self, repos):
        with pytest.raises(ValueError):
            await repos.create_workspace("proj", visibility="internal; rm -rf /")


# ---------------------------------------------------------------------------
# Push and branch
# ---------------------------------------------------------------------------

class TestPush:
    @pytest.mark.asyncio
    async def test_commits_pending_changes_then_pushes(self, repos, fake_pool):
        fake_pool.on("git status --porcelain", stdout=" M app.py\n")
        fake_pool.on("push", stderr="To github.com:acme/proj.git\n   abc..def  main -> main\n")

        result = await repos.push_workspace(f"{BASE}/proj", message="Add feature")

        assert result.success is True
        assert "main -> main" in result.output
        assert fake_pool.ran("commit -q -m 'Add feature'")
        assert "push origin main" in fake_pool.secret_calls[-1][0]
        _assert_no_token(fake_pool)

    @pytest.mark.asyncio
    async def test_clean_tree_skips_commit(self, repos, fake_pool):
        await repos.push_workspace("proj", force=True)

        assert not fake_pool.ran("commit")
        assert "push --force origin main" in fake_pool.secret_calls[-1][0]

    @pytest.mark.asyncio
    async def test_rejected_push_has_hint(self, repos, fake_pool):
        fake_pool.on("push", returncode=1, stderr="! [rejected] main -> main (fetch first)")

        result = await repos.push_workspace("proj")

        assert result.success is False
        assert "rejected" in result.hint.lower()

    @pytest.mark.asyncio
    async def test_invalid_branch(self, repos, fake_pool):
        with pytest.raises(ValueError):
            await repos.push_workspace("proj", branch="main;reboot")
        assert fake_pool.commands == []

    def test_push_hints(self):
        assert "Authentication" in _push_hint("remote: Authentication failed")
        assert "reach" in _push_hint("fatal: Could not read from remote repository.")
        assert _push_hint("something else") is None


class TestCreateBranch:
    @pytest.mark.asyncio
    async def test_creates_and_publishes(self, repos, fake_pool):
        result = await repos.create_branch("proj", "feature/x")

        assert result.success is True
        assert fake_pool.ran("git checkout -b feature/x")
        assert "push -u origin feature/x" in fake_pool.secret_calls[-1][0]

    @pytest.mark.asyncio
    async def test_local_only(self, repos, fake_pool):
        await repos.create_branch("proj", "wip", push=False)
        assert fake_pool.secret_calls == []


# ---------------------------------------------------------------------------
# Listing and deletion
# ---------------------------------------------------------------------------

class TestListAndDelete:
    @pytest.mark.asyncio
    async def test_list_parses_entries(self, repos, fake_pool):
        fake_pool.on("for d in", stdout="proj|1|https://github.com/acme/proj.git\nscratch|0|\n\n")

        workspaces = await repos.list_workspaces()

        assert [(w.name, w.has_git, w.remote_url) for w in workspaces] == [
            ("proj", True, "https://github.com/acme/proj.git"),
            ("scratch", False, None),
        ]
        assert workspaces[0].path == f"{BASE}/proj"

    @pytest.mark.asyncio
    async def test_delete(self, repos, fake_pool):
        result = await repos.delete_workspace("proj")
        assert result.success is True
        assert fake_pool.commands == [f"rm -rf -- {BASE}/proj"]
