# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the newsletter service.

Usage:
    newsletter-service init-db
    newsletter-service serve --port 8000
    newsletter-service worker
    newsletter-service prune
    newsletter-service release-key admin-1 form-4f2a
    newsletter-service queue --issue 3c8f...
    newsletter-service issues --json

Every command reads the same configuration as ``main.py`` (``NLS_CONFIG`` or
``--config``); ``--database`` overrides the configured storage.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .idempotency import IdempotencyKey, IdempotencyStore, InvalidIdempotencyKey
from .logger import configure_logging
from .persistence import Persistence
from .retention import IdempotencyPruner
from .settings import load_settings
from .sql import create_adapter

console = Console()
err_console = Console(stderr=True)


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


def _settings(ctx: click.Context) -> Dict[str, Any]:
    return ctx.obj["settings"]


async def _open_persistence(settings: Dict[str, Any]) -> Persistence:
    adapter = create_adapter(str(settings["database"]), pool_size=int(settings.get("pool_size") or 10))
    await adapter.connect()
    persistence = Persistence(adapter)
    await persistence.init_db()
    return persistence


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="INI configuration file (default: $NLS_CONFIG or config.ini).")
@click.option("--database", default=None, help="Database path or postgresql:// DSN.")
@click.version_option(package_name="newsletter-service")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], database: Optional[str]) -> None:
    """Newsletter service: subscriptions, publishing and delivery."""
    settings = load_settings(config_path)
    if database:
        settings["database"] = database
    configure_logging(str(settings.get("log_level") or "INFO"))
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@main.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database schema."""
    settings = _settings(ctx)

    async def _init():
        persistence = await _open_persistence(settings)
        await persistence.adapter.close()

    run_async(_init())
    print_success(f"Schema ready in {settings['database']}")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from config).")
@click.option("--no-worker", is_flag=True, help="Serve HTTP only; run the worker separately.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], no_worker: bool) -> None:
    """Run the HTTP API, with the delivery worker unless disabled."""
    import uvicorn

    from .api import create_app, service_lifespan
    from .service import NewsletterService

    settings = _settings(ctx)
    svc = NewsletterService.from_settings(settings)
    run_worker = bool(settings.get("run_worker")) and not no_worker
    app = create_app(svc, api_token=settings.get("api_token"), lifespan=service_lifespan(svc, run_worker))
    uvicorn.run(app, host=host or str(settings["http_host"]), port=port or int(settings["http_port"]))


@main.command("worker")
@click.pass_context
def worker(ctx: click.Context) -> None:
    """Run the delivery worker and the idempotency pruner until interrupted."""
    from .service import NewsletterService

    svc = NewsletterService.from_settings(_settings(ctx))

    async def _run():
        await svc.init()
        try:
            await svc.run_until_stopped()
        finally:
            await svc.close()

    try:
        run_async(_run())
    except KeyboardInterrupt:
        console.print("[dim]Worker interrupted.[/dim]")


@main.command("prune")
@click.option("--retention", type=int, default=None, help="Seconds to keep records (default: from config).")
@click.pass_context
def prune(ctx: click.Context, retention: Optional[int]) -> None:
    """Delete expired idempotency records once."""
    settings = _settings(ctx)
    retention_seconds = retention if retention is not None else int(settings["idempotency_retention"])

    async def _prune():
        persistence = await _open_persistence(settings)
        try:
            return await IdempotencyPruner(persistence, retention_seconds=retention_seconds).prune_once()
        finally:
            await persistence.adapter.close()

    removed = run_async(_prune())
    print_success(f"Removed {removed} expired idempotency record(s)")


@main.command("release-key")
@click.argument("user_id")
@click.argument("key")
@click.pass_context
def release_key(ctx: click.Context, user_id: str, key: str) -> None:
    """Forget a pending idempotency KEY of USER_ID so it can be retried."""
    try:
        parsed = IdempotencyKey.parse(key)
    except InvalidIdempotencyKey as exc:
        print_error(str(exc))
        raise SystemExit(1)
    settings = _settings(ctx)

    async def _release():
        persistence = await _open_persistence(settings)
        try:
            return await IdempotencyStore(persistence).release_pending(parsed, user_id)
        finally:
            await persistence.adapter.close()

    if not run_async(_release()):
        print_error(f"No pending record for key '{key}' of user '{user_id}'")
        raise SystemExit(1)
    print_success(f"Released key '{key}' of user '{user_id}'")


@main.command("queue")
@click.option("--issue", "issue_id", default=None, help="Only show tasks of this issue.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def queue(ctx: click.Context, issue_id: Optional[str], as_json: bool) -> None:
    """List pending delivery tasks."""
    settings = _settings(ctx)

    async def _list():
        persistence = await _open_persistence(settings)
        try:
            return await persistence.list_delivery_tasks(issue_id)
        finally:
            await persistence.adapter.close()

    tasks = run_async(_list())

    if as_json:
        print_json(tasks)
        return

    if not tasks:
        console.print("[dim]No pending deliveries.[/dim]")
        return

    table = Table(title="Delivery Queue")
    table.add_column("Issue", style="cyan")
    table.add_column("Subscriber")
    table.add_column("Retries", justify="right")
    table.add_column("Execute after", justify="right")
    table.add_column("Claimed until", justify="right")

    for task in tasks:
        table.add_row(
            task["issue_id"],
            task["subscriber_email"],
            str(task["n_retries"]),
            str(task["execute_after"]),
            str(task["claimed_until"]) if task.get("claimed_until") is not None else "-",
        )

    console.print(table)


@main.command("issues")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def issues(ctx: click.Context, as_json: bool) -> None:
    """List published newsletter issues."""
    settings = _settings(ctx)

    async def _list():
        persistence = await _open_persistence(settings)
        try:
            return await persistence.list_issues()
        finally:
            await persistence.adapter.close()

    rows = [
        {"issue_id": row["issue_id"], "title": row["title"], "published_at": row["published_at"]}
        for row in run_async(_list())
    ]

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No issues published yet.[/dim]")
        return

    table = Table(title="Newsletter Issues")
    table.add_column("Issue", style="cyan")
    table.add_column("Title")
    table.add_column("Published", justify="right")

    for row in rows:
        published = datetime.fromtimestamp(row["published_at"], tz=timezone.utc)
        table.add_row(row["issue_id"], row["title"], published.strftime("%Y-%m-%d %H:%M:%S"))

    console.print(table)


if __name__ == "__main__":
    main()
