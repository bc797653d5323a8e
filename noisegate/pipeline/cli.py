"""CLI interface for the NoiseGate ingestion core.

Usage:
    noisegate poll
    noisegate cleanup --action full
    noisegate delete-source src-123
    noisegate stream
    noisegate status
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from noisegate.config import Settings, load_settings
from noisegate.errors import NoiseGateError
from noisegate.pipeline.handlers import (
    CLEANUP_ACTIONS,
    ACTION_FULL,
    cleanup_handler,
    delete_source_handler,
    open_store,
)
from noisegate.pipeline.lifecycle import LifecycleManager
from noisegate.pipeline.orchestrator import PollOrchestrator
from noisegate.pipeline.seeder import seed_system_sources
from noisegate.storage.models import Source

console = Console()


def run_async(coro):
    """Run a coroutine to completion, reporting configuration errors cleanly."""
    try:
        return asyncio.run(coro)
    except NoiseGateError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


@click.group()
@click.option("--db", default=None, help="Database path (overrides config and NOISEGATE_DB_PATH)")
@click.option("--config", default=None, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx, db: Optional[str], config: Optional[str], verbose: bool):
    """NoiseGate ingestion and cleanup CLI."""
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path=config, db_path=db)


@cli.command()
@click.option("--source", "source_ids", multiple=True, help="Only poll these source IDs")
@click.option("--due-only", is_flag=True, help="Skip sources polled within their interval")
@click.pass_context
def poll(ctx, source_ids: tuple, due_only: bool):
    """Run one poll over all active sources."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            orchestrator = PollOrchestrator(db, settings)
            with console.status("[bold green]Polling..."):
                result = await orchestrator.run(source_ids=list(source_ids) or None, due_only=due_only)

        table = Table(title="Poll Results")
        table.add_column("Source", style="cyan")
        table.add_column("Fetched", justify="right")
        table.add_column("Saved", justify="right", style="green")
        table.add_column("Duplicates", justify="right", style="yellow")
        table.add_column("Errors", justify="right", style="red")
        table.add_column("Time", justify="right")

        for r in result.results:
            table.add_row(
                r.source_name or r.source_id,
                str(r.fetched),
                str(r.inserted),
                str(r.duplicates),
                str(r.errors),
                f"{r.duration_seconds:.1f}s",
            )
        table.add_section()
        table.add_row(
            f"[bold]Total ({result.sources_processed} ok)",
            f"[bold]{result.items_found}",
            f"[bold green]{result.new_items_saved}",
            "",
            f"[bold red]{len(result.errors)}",
            f"[bold]{result.duration_seconds:.1f}s",
        )
        console.print(table)
        for err in result.errors:
            console.print(f"[red]•[/red] {err}")

    run_async(_run())


@cli.command()
@click.option(
    "--action",
    type=click.Choice(CLEANUP_ACTIONS),
    default=ACTION_FULL,
    show_default=True,
    help="Cleanup stage to run",
)
@click.option("--source", "source_id", help="Source ID (required for markForDeletion)")
@click.pass_context
def cleanup(ctx, action: str, source_id: Optional[str]):
    """Run a cleanup action."""
    settings: Settings = ctx.obj["settings"]
    event = {"action": action}
    if source_id:
        event["sourceId"] = source_id
    result = run_async(cleanup_handler(event, settings))
    console.print_json(json.dumps(result))
    if result["errors"]:
        sys.exit(1)


@cli.command("delete-source")
@click.argument("source_id")
@click.pass_context
def delete_source(ctx, source_id: str):
    """Delete a source and fast-track its items to expiry."""
    settings: Settings = ctx.obj["settings"]
    result = run_async(delete_source_handler({"sourceId": source_id}, settings))
    console.print_json(json.dumps(result))
    if not result["success"]:
        sys.exit(1)


@cli.command()
@click.option("--max-batches", type=int, default=None, help="Stop after N batches")
@click.pass_context
def stream(ctx, max_batches: Optional[int]):
    """Consume the removal log and apply story-group decrements."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            result = await LifecycleManager(db, settings).drain_change_stream(max_batches=max_batches)
        console.print_json(json.dumps(result.to_dict()))

    run_async(_run())


@cli.command("ttl-reap")
@click.pass_context
def ttl_reap(ctx):
    """Reclaim expired items, as the store's TTL would."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            removed = await LifecycleManager(db, settings).expire_items()
        console.print(f"[green]Reclaimed {removed} expired item(s)")

    run_async(_run())


@cli.command()
@click.pass_context
def seed(ctx):
    """Create the configured system sources."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            result = await seed_system_sources(db, settings)
        console.print(
            f"Checked {result['sources_checked']}, created [green]{result['sources_created']}[/green], "
            f"skipped [yellow]{result['sources_skipped']}[/yellow]"
        )
        for err in result["errors"]:
            console.print(f"[red]•[/red] {err}")

    run_async(_run())


@cli.command("add-source")
@click.argument("url")
@click.argument("name")
@click.option("--interval", default=15, show_default=True, help="Poll interval in minutes")
@click.pass_context
def add_source(ctx, url: str, name: str, interval: int):
    """Register a feed source."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            source = Source.create(url=url, name=name, poll_interval_minutes=interval)
            await db.upsert_source(source)
        console.print(f"[green]Added source[/green] {source.id} ({name})")

    run_async(_run())


@cli.command("enable-source")
@click.argument("source_id")
@click.option("--disable", is_flag=True, help="Disable instead of enable")
@click.pass_context
def enable_source(ctx, source_id: str, disable: bool):
    """Re-enable (or disable) a source."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            found = await db.set_source_active(source_id, not disable)
        if not found:
            console.print(f"[red]No such source:[/red] {source_id}")
            sys.exit(1)
        console.print(f"Source {source_id} {'disabled' if disable else 'enabled'}")

    run_async(_run())


@cli.command()
@click.pass_context
def status(ctx):
    """Show store and source status."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            stats = await db.get_stats()
            sources = await db.list_sources()
            healthy = await db.integrity_check()

        console.print("\n[bold]Store Status[/bold]")
        console.print(f"  Path: {settings.db_path}")
        console.print(f"  Size: {stats['db_size_bytes'] / 1024:.1f} KB")
        console.print(f"  Items: {stats['total_items']} ({stats['marked_items']} marked)")
        console.print(f"  Story groups: {stats['total_story_groups']} ({stats['orphaned_story_groups']} orphaned)")
        console.print(f"  Sources: {stats['total_sources']} ({stats['active_sources']} active)")
        console.print(f"  Pending removal records: {stats['pending_removals']}")
        console.print(f"  Integrity: {'[green]ok' if healthy else '[red]FAILED'}")

        if sources:
            console.print()
            table = Table(title="Source Status")
            table.add_column("ID", style="cyan")
            table.add_column("Name")
            table.add_column("Active")
            table.add_column("Last Success")
            table.add_column("Errors", justify="right")
            table.add_column("Items", justify="right")
            table.add_column("Last Error")

            for s in sources:
                last_success = (
                    s.last_success_at.strftime("%Y-%m-%d %H:%M")
                    if s.last_success_at
                    else "never"
                )
                table.add_row(
                    s.id,
                    s.name,
                    "[green]yes" if s.is_active else "[red]no",
                    last_success,
                    str(s.consecutive_errors),
                    str(stats["items_by_source"].get(s.id, 0)),
                    (s.last_error or "")[:50],
                )
            console.print(table)

    run_async(_run())


@cli.command()
@click.pass_context
def vacuum(ctx):
    """Vacuum the database."""
    settings: Settings = ctx.obj["settings"]

    async def _run():
        async with open_store(settings) as db:
            with console.status("[bold green]Vacuuming database..."):
                await db.vacuum()
            stats = await db.get_stats()
            healthy = await db.integrity_check()
        console.print(f"[green]Database vacuumed[/green] ({stats['db_size_bytes'] / 1024:.1f} KB)")
        if not healthy:
            raise click.ClickException("Integrity check failed after vacuum")
        console.print("Integrity: [green]ok")

    run_async(_run())


def main():
    cli()


if __name__ == "__main__":
    main()
