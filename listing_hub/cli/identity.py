"""
Identity and Maintenance CLI Commands
=====================================

CLI commands for placeholder identity merging, the reference index,
sale expiry and raw record inspection.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

from listing_hub.db.engine import get_session
from listing_hub.identity import IdentityMerger, PlaceholderPolicy, ReferenceIndex
from listing_hub.ingestion.raw_store import RawStore
from listing_hub.ingestion.registry import get_default_registry
from listing_hub.ingestion.sales import SaleTracker

console = Console()
identity_app = typer.Typer(help="Placeholder identity commands")
sales_app = typer.Typer(help="Sale tracking commands")
raw_app = typer.Typer(help="Raw record commands")


@identity_app.command("merge")
def merge_identities(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report planned merges without writing"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Maximum candidates to consider"),
    code: Optional[str] = typer.Option(None, "--code", "-c", help="Only products with this business code"),
) -> None:
    """
    Merge placeholder performers into their true identities.

    Examples:
        listing-hub identity merge --dry-run
        listing-hub identity merge --code ABC-101
    """
    registry = get_default_registry()
    policy = PlaceholderPolicy.from_config(registry.identity)

    with get_session() as session:
        merger = IdentityMerger(session, policy, probe_limit=registry.identity.probe_limit)
        report = merger.run(dry_run=dry_run, limit=limit, code=code)
        if not dry_run:
            session.commit()

    title = "Planned Merges" if dry_run else "Merges"
    if report.actions:
        table = Table(title=title)
        table.add_column("Placeholder", style="bold")
        table.add_column("True identity")
        table.add_column("Method")
        table.add_column("Code")
        table.add_column("Products", justify="right")
        for action in report.actions:
            table.add_row(
                action["placeholder"],
                action["true_name"],
                action["method"],
                action["business_code"] or "",
                str(action["products"]),
            )
        console.print(table)

    rprint(f"\n[bold]Candidates:[/bold] {report.scanned}")
    rprint(f"  Resolved: {report.resolved}")
    rprint(f"  Merged: {report.merged}")
    rprint(f"  Unresolved: {report.unresolved}")
    if report.flagged_for_review:
        rprint(f"\n[bold yellow]Flagged for review ({len(report.flagged_for_review)}):[/bold yellow]")
        for name in report.flagged_for_review:
            rprint(f"  • {name}")
    if report.errors:
        rprint(f"\n[bold red]Errors ({len(report.errors)}):[/bold red]")
        for error in report.errors:
            rprint(f"  • {error}")


@identity_app.command("reference-import")
def import_reference(
    path: Path = typer.Argument(..., help="CSV file with business_code and identity_name columns"),
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Source name for rows without one"),
) -> None:
    """
    Import reference index entries from a CSV file.

    Examples:
        listing-hub identity reference-import data/reference.csv --source wiki
    """
    if not path.exists():
        rprint(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)

    with get_session() as session:
        written = ReferenceIndex(session).load_csv(path, source=source)
        session.commit()

    rprint(f"[green]Imported {written} reference entries[/green]")


@sales_app.command("sweep")
def sweep_sales() -> None:
    """
    Deactivate sales whose window has ended.

    Examples:
        listing-hub sales sweep
    """
    with get_session() as session:
        count = SaleTracker(session).deactivate_expired()
        session.commit()

    rprint(f"[green]Deactivated {count} expired sales[/green]")


@raw_app.command("pending")
def pending_raw(
    source: Optional[str] = typer.Option(None, "--source", "-s", help="Only this source"),
) -> None:
    """
    Show raw records waiting for normalization.

    Examples:
        listing-hub raw pending
        listing-hub raw pending --source fixture
    """
    with get_session() as session:
        store = RawStore(session)
        if source:
            counts = {source: store.count_unprocessed(source)}
        else:
            counts = store.count_unprocessed_by_source()

    if not counts or not any(counts.values()):
        rprint("[green]No unprocessed raw records[/green]")
        return

    table = Table(title="Unprocessed Raw Records")
    table.add_column("Source", style="bold")
    table.add_column("Pending", justify="right")
    for name, count in counts.items():
        table.add_row(name, str(count))
    console.print(table)
