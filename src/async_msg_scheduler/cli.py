# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the message scheduler.

Offline commands work directly on the document store and are meant for a
stopped service (or for inspection); ``serve`` runs the HTTP service.

Usage:
    msg-scheduler serve --config config.ini
    msg-scheduler tenants list
    msg-scheduler tenants delete acme
    msg-scheduler jobs list acme
    msg-scheduler jobs delete acme 1735689600000
    msg-scheduler recent acme --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from async_msg_scheduler.config import load_settings
from async_msg_scheduler.models import Job
from async_msg_scheduler.persistence import Persistence

console = Console()
err_console = Console(stderr=True)


def get_persistence(db_path: str) -> Persistence:
    """Create a Persistence instance with the given database path."""
    return Persistence(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _db_path(ctx: click.Context) -> str:
    return ctx.obj["db_path"]


def _load_jobs(docs: list[dict[str, Any]]) -> list[Job]:
    jobs = []
    for doc in docs:
        try:
            jobs.append(Job.model_validate(doc))
        except ValidationError:
            continue
    return sorted(jobs, key=lambda job: job.id)


def _repeat_label(job: Job) -> str:
    if job.interval_n:
        return f"{job.repeat.value} ({job.interval_n})"
    return job.repeat.value


@click.group()
@click.option("--db", "db_path", default=None, help="Database path (default: from config/environment).")
@click.option("--config", "config_path", default=None, help="Path to the INI config file.")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, config_path: str | None) -> None:
    """Scheduled message dispatcher."""
    settings = load_settings(config_path)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["db_path"] = db_path or settings.db_path


@main.command("serve")
@click.option("--host", default=None, help="Bind host.")
@click.option("--port", type=int, default=None, help="Bind port.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Run the HTTP service."""
    import uvicorn

    from async_msg_scheduler.server import build_app, configure_logging

    settings = ctx.obj["settings"]
    settings.db_path = _db_path(ctx)
    configure_logging(settings.log_level)
    uvicorn.run(build_app(settings), host=host or settings.host, port=port or settings.port)


# ----------------------------------------------------------------- tenants
@main.group("tenants", invoke_without_command=True)
@click.pass_context
def tenants(ctx: click.Context) -> None:
    """Inspect and delete tenants."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@tenants.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tenants_list(ctx: click.Context, as_json: bool) -> None:
    """List tenants that have persisted jobs."""
    persistence = get_persistence(_db_path(ctx))

    async def _list():
        await persistence.init_db()
        rows = []
        for tenant_id in await persistence.list_tenants():
            rows.append({"id": tenant_id, "jobs": len(await persistence.read_collection(tenant_id))})
        return rows

    rows = run_async(_list())

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No tenants found.[/dim]")
        return

    table = Table(title="Tenants")
    table.add_column("ID", style="cyan")
    table.add_column("Jobs", justify="right")
    for row in rows:
        table.add_row(row["id"], str(row["jobs"]))
    console.print(table)


@tenants.command("delete")
@click.argument("tenant_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def tenants_delete(ctx: click.Context, tenant_id: str, force: bool) -> None:
    """Delete a tenant's jobs and recent history."""
    persistence = get_persistence(_db_path(ctx))

    if not force:
        if not click.confirm(f"Delete tenant '{tenant_id}' and all associated data?"):
            console.print("Aborted.")
            return

    async def _delete():
        await persistence.init_db()
        return await persistence.delete_tenant(tenant_id)

    if run_async(_delete()):
        print_success(f"Tenant '{tenant_id}' deleted.")
    else:
        print_error(f"Tenant '{tenant_id}' not found.")
        sys.exit(1)


# -------------------------------------------------------------------- jobs
@main.group("jobs", invoke_without_command=True)
@click.pass_context
def jobs(ctx: click.Context) -> None:
    """Inspect and delete scheduled jobs."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@jobs.command("list")
@click.argument("tenant_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def jobs_list(ctx: click.Context, tenant_id: str, as_json: bool) -> None:
    """List the jobs of a tenant."""
    persistence = get_persistence(_db_path(ctx))

    async def _list():
        await persistence.init_db()
        return await persistence.read_collection(tenant_id)

    job_list = _load_jobs(run_async(_list()))

    if as_json:
        print_json([job.to_document() for job in job_list])
        return

    if not job_list:
        console.print(f"[dim]No jobs for tenant '{tenant_id}'.[/dim]")
        return

    table = Table(title=f"Jobs of {tenant_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Repeat")
    table.add_column("Anchor")
    table.add_column("Next run")
    table.add_column("Left", justify="right")
    table.add_column("Recipients", justify="right")
    table.add_column("Window")
    for job in job_list:
        window = f"{job.window_start}-{job.window_end}" if job.window_start and job.window_end else "-"
        table.add_row(
            str(job.id),
            _repeat_label(job),
            job.anchor_time.isoformat(),
            job.next_run_at.isoformat() if job.next_run_at else "-",
            str(job.remaining_runs) if job.remaining_runs is not None else "-",
            str(len(job.recipients)),
            window,
        )
    console.print(table)


@jobs.command("delete")
@click.argument("tenant_id")
@click.argument("job_id", type=int)
@click.pass_context
def jobs_delete(ctx: click.Context, tenant_id: str, job_id: int) -> None:
    """Delete one job from a tenant's collection."""
    persistence = get_persistence(_db_path(ctx))

    async def _delete():
        await persistence.init_db()
        docs = await persistence.read_collection(tenant_id)
        kept = [doc for doc in docs if doc.get("id") != job_id]
        if len(kept) == len(docs):
            return False
        await persistence.write_collection(tenant_id, kept)
        return True

    if run_async(_delete()):
        print_success(f"Job {job_id} deleted.")
    else:
        print_error(f"Job {job_id} not found for tenant '{tenant_id}'.")
        sys.exit(1)


# ------------------------------------------------------------------ recent
@main.command("recent")
@click.argument("tenant_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def recent(ctx: click.Context, tenant_id: str, as_json: bool) -> None:
    """Show recently used targets and messages of a tenant."""
    persistence = get_persistence(_db_path(ctx))

    async def _read():
        await persistence.init_db()
        return await persistence.read_recent(tenant_id)

    data = run_async(_read())

    if as_json:
        print_json(data)
        return

    if not data["targets"] and not data["messages"]:
        console.print("[dim]No recent entries.[/dim]")
        return

    for title, items in (("Recent targets", data["targets"]), ("Recent messages", data["messages"])):
        table = Table(title=title)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Value")
        for idx, value in enumerate(items, start=1):
            table.add_row(str(idx), value)
        console.print(table)


if __name__ == "__main__":
    main()
