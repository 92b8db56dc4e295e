"""Admin CLI for the remote agent orchestrator."""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager

import click


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@asynccontextmanager
async def _context():
    """A short-lived context; closes the ssh master and DB engine on exit.

    Containers started elsewhere are left alone.
    """
    from modules.remote_agent.context import build_context
    from shared.config import get_settings
    from shared.database import dispose_engine, get_session_factory

    ctx = build_context(get_settings(), get_session_factory())
    try:
        yield ctx
    finally:
        await ctx.pool.close()
        await dispose_engine()


@click.group()
def cli():
    """Remote agent orchestrator administration CLI."""
    pass


# --- Setup ---


@cli.command()
@click.option("--build-image/--no-build-image", default=False, help="Build the agent image if it is missing.")
@click.option(
    "--alembic-ini",
    envvar="ALEMBIC_CONFIG",
    type=click.Path(dir_okay=False),
    default=None,
    help="Path to alembic.ini. Defaults to /app, the working directory, then the source checkout.",
)
def setup(build_image, alembic_ini):
    """Run database migrations and optionally build the agent image.

    Migrations are not part of the installed distribution; run this from
    the service image or a source checkout, or point ``--alembic-ini`` at one.
    """
    click.echo("Running database migrations...")
    _run_migrations(alembic_ini)

    if build_image:
        click.echo("Checking agent image on the remote host...")
        run_async(_ensure_image())

    click.echo("Setup complete.")


def _find_alembic_ini(explicit=None):
    if explicit:
        return explicit if os.path.exists(explicit) else None
    candidates = [
        "/app/alembic.ini",
        os.path.join(os.getcwd(), "alembic.ini"),
        os.path.join(os.getcwd(), "agent", "alembic.ini"),
        os.path.join(os.path.dirname(os.path.abspath(__file__)), "alembic.ini"),
    ]
    return next((c for c in candidates if os.path.exists(c)), None)


def _run_migrations(alembic_ini=None):
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

    candidate = _find_alembic_ini(alembic_ini)
    if candidate is None:
        raise click.ClickException(
            "alembic.ini not found; run from a source checkout or pass --alembic-ini"
        )

    alembic_cfg = Config(candidate)
    script_dir = os.path.join(os.path.dirname(os.path.abspath(candidate)), "alembic")
    if os.path.isdir(script_dir):
        alembic_cfg.set_main_option("script_location", script_dir)
    db_url = os.environ.get("DATABASE_URL")
    if db_url:
        alembic_cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(alembic_cfg, "head")


async def _ensure_image():
    async with _context() as ctx:
        if await ctx.containers.image_exists():
            click.echo(f"  Image already present: {ctx.containers.image}")
            return
        click.echo(f"  Building {ctx.containers.image} (this can take a while)...")
        if await ctx.containers.build_image():
            click.echo("  Image built.")
        else:
            click.echo("  Error: image build failed, see logs.")


# --- Agent containers ---


@cli.group()
def agents():
    """Agent container commands."""
    pass


@agents.command("list")
def list_agents():
    """List agent containers on the remote host."""
    run_async(_list_agents())


async def _list_agents():
    async with _context() as ctx:
        containers = await ctx.containers.list_agents()
    if not containers:
        click.echo("No agent containers found.")
        return
    for c in containers:
        click.echo(f"{c.id} | {c.name} | {c.status} | {c.created}")


@agents.command("logs")
@click.argument("container_id")
@click.option("--tail", default=100, show_default=True, help="Number of lines")
def agent_logs(container_id, tail):
    """Print the last lines of an agent container's log."""
    run_async(_agent_logs(container_id, tail))


async def _agent_logs(container_id, tail):
    async with _context() as ctx:
        click.echo(await ctx.containers.get_agent_logs(container_id, tail))


@agents.command("stop")
@click.argument("container_id")
def stop_agent(container_id):
    """Stop and remove an agent container."""
    run_async(_stop_agent(container_id))


async def _stop_agent(container_id):
    async with _context() as ctx:
        outcome = await ctx.containers.stop_agent(container_id)
    if outcome.success:
        click.echo(f"Stopped {container_id}")
    else:
        click.echo(f"Stopped {container_id} with errors:")
        for err in outcome.errors:
            click.echo(f"  {err}")


@agents.command("cleanup")
def cleanup_agents():
    """Remove exited agent containers."""
    run_async(_cleanup_agents())


async def _cleanup_agents():
    async with _context() as ctx:
        outcome = await ctx.containers.cleanup_containers()
    if outcome.error:
        click.echo(f"Error: {outcome.error}")
    else:
        click.echo(f"Removed {outcome.removed} container(s).")


# --- Workspaces ---


@cli.group()
def workspaces():
    """Workspace commands."""
    pass


@workspaces.command("list")
@click.option("--task-id", default=None, help="Show registry records for one task")
def list_workspaces(task_id):
    """List workspaces on the remote host, or one task's workspace records."""
    run_async(_list_workspaces(task_id))


async def _list_workspaces(task_id):
    async with _context() as ctx:
        if task_id:
            records = await ctx.registry.get_all_task_workspaces(task_id)
            if not records:
                click.echo(f"No workspaces recorded for task {task_id}.")
            for ws in records:
                marker = "*" if ws.is_primary and ws.status == "active" else " "
                click.echo(f"{marker} {ws.path} | {ws.status} | {ws.github_repo_url or '-'}")
            return
        remote = await ctx.repos.list_workspaces()
    if not remote:
        click.echo("No workspaces found.")
    for ws in remote:
        git = "git" if ws.has_git else "   "
        click.echo(f"{ws.name} | {git} | {ws.remote_url or '-'}")


@workspaces.command("orphans")
def list_orphans():
    """Show workspaces that cleanup would delete."""
    run_async(_list_orphans())


async def _list_orphans():
    async with _context() as ctx:
        orphans = await ctx.registry.get_orphaned_workspaces()
    if not orphans:
        click.echo("No orphaned workspaces.")
    for ws in orphans:
        click.echo(f"{ws.task_id} | {ws.path}")


@workspaces.command("cleanup")
@click.confirmation_option(prompt="Delete all orphaned workspaces?")
def cleanup_workspaces():
    """Delete orphaned workspaces of failed tasks."""
    run_async(_cleanup_workspaces())


async def _cleanup_workspaces():
    async with _context() as ctx:
        report = await ctx.registry.cleanup_orphaned_workspaces()
    click.echo(f"Cleaned {report.cleaned}, errors {report.errors}.")


if __name__ == "__main__":
    cli()
