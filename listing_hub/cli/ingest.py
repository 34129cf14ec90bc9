"""
Ingestion CLI Commands
======================

CLI commands for managing the listing ingestion pipeline.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from redis.exceptions import RedisError
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from listing_hub.ingestion.adapters import get_adapter_info, list_adapters
from listing_hub.ingestion.jobs import enqueue_ingestion, get_job_status, run_source_sync
from listing_hub.ingestion.rate_limiter import get_rate_limit_config
from listing_hub.ingestion.registry import get_default_registry

console = Console()
ingest_app = typer.Typer(help="Ingestion pipeline commands")
sources_app = typer.Typer(help="Source management commands")
jobs_app = typer.Typer(help="Job management commands")

ingest_app.add_typer(sources_app, name="sources")
ingest_app.add_typer(jobs_app, name="jobs")

FATAL_STATUSES = {"failed", "aborted"}


@ingest_app.command("run")
def run_ingestion(
    source: str = typer.Option(..., "--source", "-s", help="Source name to ingest"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum items to process"),
    offset: int = typer.Option(0, "--offset", help="Discovered items to skip"),
    force: bool = typer.Option(False, "--force", "-f", help="Reprocess unchanged items"),
    backfill: bool = typer.Option(False, "--backfill", help="Also walk the index from the last page"),
    sync: bool = typer.Option(False, "--sync", help="Run synchronously (blocking)"),
) -> None:
    """
    Run the ingestion pipeline for a source.

    Examples:
        listing-hub ingest run --source=fixture --limit=10 --sync
        listing-hub ingest run -s fixture -l 50 --backfill
    """
    registry = get_default_registry()
    source_config = registry.get_source(source)

    if source_config is None:
        rprint(f"[red]Error:[/red] Source '{source}' not found")
        rprint("\nAvailable sources:")
        for s in registry.list_sources():
            status = "[green]enabled[/green]" if s.enabled else "[yellow]disabled[/yellow]"
            rprint(f"  • {s.name} ({status})")
        raise typer.Exit(1)

    if not source_config.enabled:
        rprint(f"[red]Error:[/red] Source '{source}' is disabled")
        raise typer.Exit(1)

    rprint(f"\n[bold]Starting ingestion for source:[/bold] {source}")
    rprint(f"  Adapter: {source_config.adapter}")
    if limit:
        rprint(f"  Limit: {limit}")
    if backfill:
        rprint("  Mode: backfill")

    if sync:
        rprint("\n[dim]Running synchronously...[/dim]\n")

        with console.status("[bold blue]Ingesting...[/bold blue]"):
            result = asyncio.run(run_source_sync(source, limit, offset, force, backfill))

        _display_run_stats(result)

        if result.get("status") in FATAL_STATUSES:
            raise typer.Exit(1)
    else:
        rprint("\n[dim]Enqueueing job for async processing...[/dim]")

        try:
            job_id = asyncio.run(enqueue_ingestion(source, limit, offset, force, backfill))
        except (RedisError, OSError) as e:
            rprint(f"\n[red]Error:[/red] Failed to enqueue job: {e}")
            rprint("\nCheck REDIS_HOST/REDIS_PORT, or rerun with --sync to ingest in-process")
            raise typer.Exit(1)

        rprint("\n[green]Job enqueued successfully![/green]")
        rprint(f"Job ID: [bold]{job_id}[/bold]")
        rprint("\nCheck status with:")
        rprint(f"  listing-hub ingest jobs status {job_id}")


@ingest_app.command("worker")
def start_worker(
    burst: bool = typer.Option(False, "--burst", help="Run in burst mode (exit when queue empty)"),
) -> None:
    """
    Start the ingestion worker.

    The worker processes queued ingestion, sale sweep and merge jobs from Redis.

    Examples:
        listing-hub ingest worker
        listing-hub ingest worker --burst
    """
    from arq import run_worker

    from listing_hub.ingestion.jobs import WorkerSettings

    rprint("[bold]Starting ingestion worker...[/bold]")
    rprint("Press Ctrl+C to stop\n")

    try:
        run_worker(WorkerSettings, burst=burst)
    except (RedisError, OSError) as e:
        rprint(f"[red]Error:[/red] Worker failed: {e}")
        rprint(f"\nNo Redis at {WorkerSettings.redis_settings.host}:{WorkerSettings.redis_settings.port}")
        raise typer.Exit(1)


# Sources subcommands


def _rate_limit_summary(source) -> str:
    config = source.rate_limit or get_rate_limit_config(source.adapter)
    return f"{config.base_delay:g}s x{config.max_concurrency}"


@sources_app.command("list")
def list_sources(
    all_sources: bool = typer.Option(False, "--all", "-a", help="Show all sources including disabled"),
) -> None:
    """
    List configured ingestion sources.

    Examples:
        listing-hub ingest sources list
        listing-hub ingest sources list --all
    """
    registry = get_default_registry()
    sources = registry.list_sources() if all_sources else registry.list_enabled_sources()

    if not sources:
        rprint("[yellow]No sources configured[/yellow]")
        rprint("\nAdd sources to config/sources.yaml")
        return

    table = Table(title="Ingestion Sources")
    table.add_column("Name", style="bold")
    table.add_column("Adapter")
    table.add_column("Status")
    table.add_column("Pacing")

    for source in sources:
        status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"
        table.add_row(source.name, source.adapter, status, _rate_limit_summary(source))

    console.print(table)


@sources_app.command("show")
def show_source(
    name: str = typer.Argument(..., help="Source name"),
) -> None:
    """
    Show detailed information about a source.

    Examples:
        listing-hub ingest sources show fixture
    """
    registry = get_default_registry()
    source = registry.get_source(name)

    if source is None:
        rprint(f"[red]Error:[/red] Source '{name}' not found")
        raise typer.Exit(1)

    status = "[green]enabled[/green]" if source.enabled else "[yellow]disabled[/yellow]"

    rprint(f"\n[bold]Source: {source.name}[/bold]")
    rprint(f"  Status: {status}")
    rprint(f"  Adapter: {source.adapter}")
    if source.base_url:
        rprint(f"  Base URL: {source.base_url}")
    if source.description:
        rprint(f"  Description: {source.description}")
    if source.max_pages is not None:
        rprint(f"  Max pages: {source.max_pages}")

    config = source.rate_limit or get_rate_limit_config(source.adapter)
    origin = "source config" if source.rate_limit else "static profile"
    rprint(f"\n[bold]Rate Limiting ({origin}):[/bold]")
    rprint(f"  Base delay: {config.base_delay}s")
    rprint(f"  Jitter: {config.jitter_min}-{config.jitter_max}s")
    rprint(f"  Max backoff: {config.max_backoff}s")
    rprint(f"  Max concurrency: {config.max_concurrency}")

    adapter_info = get_adapter_info(source.adapter)
    if adapter_info:
        rprint("\n[bold]Adapter Info:[/bold]")
        rprint(f"  Name: {adapter_info['name']}")
        rprint(f"  Version: {adapter_info['version']}")
        rprint(f"  Class: {adapter_info['class']}")


@sources_app.command("adapters")
def list_source_adapters() -> None:
    """
    List available adapters.

    Examples:
        listing-hub ingest sources adapters
    """
    adapters = list_adapters()

    if not adapters:
        rprint("[yellow]No adapters registered[/yellow]")
        return

    table = Table(title="Available Adapters")
    table.add_column("Name", style="bold")
    table.add_column("Version")
    table.add_column("Class")

    for adapter_name in adapters:
        info = get_adapter_info(adapter_name)
        if info:
            table.add_row(info["name"], info["version"], info["class"])

    console.print(table)


# Jobs subcommands


@jobs_app.command("status")
def job_status(
    job_id: str = typer.Argument(..., help="Job ID to check"),
) -> None:
    """
    Check the status of an ingestion job.

    Examples:
        listing-hub ingest jobs status abc123
    """
    try:
        result = asyncio.run(get_job_status(job_id))
    except (RedisError, OSError) as e:
        rprint(f"[red]Error:[/red] Failed to get job status: {e}")
        rprint("\nJob results live in Redis; check REDIS_HOST/REDIS_PORT")
        raise typer.Exit(1)

    if result is None:
        rprint(f"[yellow]Job '{job_id}' not found[/yellow]")
        raise typer.Exit(1)

    rprint(f"\n[bold]Job: {job_id}[/bold]")
    rprint(f"  Status: {result.get('status', 'unknown')}")

    if isinstance(result.get("result"), dict):
        _display_run_stats(result["result"])


def _display_run_stats(result: dict) -> None:
    """Display run statistics in a formatted table."""
    status = result.get("status", "unknown")
    status_color = {
        "completed": "green",
        "running": "blue",
        "aborted": "yellow",
        "failed": "red",
    }.get(status, "white")

    rprint("\n[bold]Results:[/bold]")
    rprint(f"  Status: [{status_color}]{status}[/{status_color}]")
    rprint(f"  Source: {result.get('source', 'N/A')}")
    if result.get("abort_reason"):
        rprint(f"  Reason: {result['abort_reason']}")
    if result.get("duration_seconds"):
        rprint(f"  Duration: {result['duration_seconds']:.1f}s")

    table = Table(title="Item Outcomes")
    table.add_column("Outcome", style="bold")
    table.add_column("Count", justify="right")
    for key, label in (
        ("fetched", "Fetched"),
        ("new", "New"),
        ("updated", "Updated"),
        ("skipped_unchanged", "Skipped (unchanged)"),
        ("skipped_invalid", "Skipped (invalid)"),
        ("not_found", "Not found"),
        ("errored", "Errors"),
        ("raw_saved", "Raw payloads saved"),
        ("sales_saved", "Sales saved"),
        ("links_created", "Links created"),
    ):
        table.add_row(label, str(result.get(key, 0)))
    console.print(table)

    errors = result.get("errors", [])
    if errors:
        rprint(f"\n[bold red]Errors ({len(errors)}):[/bold red]")
        for error in errors[:10]:  # Show first 10
            rprint(f"  • {error}")
        if len(errors) > 10:
            rprint(f"  ... and {len(errors) - 10} more")
