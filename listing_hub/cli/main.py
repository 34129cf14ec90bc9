"""Listing Hub CLI using Typer."""

from pathlib import Path

import typer
from dotenv import load_dotenv

# Load .env file from current directory or project root
_env_paths = [
    Path.cwd() / ".env",
    Path(__file__).parent.parent.parent / ".env",
]
for _env_path in _env_paths:
    if _env_path.exists():
        load_dotenv(_env_path)
        break

from listing_hub.cli.identity import identity_app, raw_app, sales_app  # noqa: E402
from listing_hub.cli.ingest import ingest_app  # noqa: E402

app = typer.Typer(
    name="listing-hub",
    help="Listing Hub - Multi-marketplace product listing ingestion",
    add_completion=False,
)
app.add_typer(ingest_app, name="ingest")
app.add_typer(identity_app, name="identity")
app.add_typer(sales_app, name="sales")
app.add_typer(raw_app, name="raw")

__version__ = "0.1.0"


@app.command()
def init_db() -> None:
    """Initialize the database (create tables)."""
    from listing_hub.db.engine import init_db as db_init

    typer.echo("Initializing database...")
    db_init()
    typer.echo("Database initialized successfully!")


@app.command()
def migrate() -> None:
    """Upgrade the database schema to the latest migration."""
    from listing_hub.db.engine import run_migrations

    typer.echo("Running migrations...")
    run_migrations()
    typer.echo("Database is up to date.")


@app.command()
def version() -> None:
    """Show the Listing Hub version."""
    typer.echo(f"Listing Hub v{__version__}")


@app.command()
def check_config() -> None:
    """Check the current configuration status."""
    typer.echo("Listing Hub Configuration")
    typer.echo("=" * 40)

    # Check .env file
    env_found = False
    for _env_path in _env_paths:
        if _env_path.exists():
            typer.echo(f"  .env file: {_env_path}")
            env_found = True
            break
    if not env_found:
        typer.echo("  .env file: Not found")

    from listing_hub.db.engine import get_database_url
    from listing_hub.ingestion.registry import get_default_registry

    typer.echo(f"  Database: {get_database_url()}")

    registry = get_default_registry()
    if registry.config_path:
        typer.echo(f"  Sources config: {registry.config_path}")
    else:
        typer.echo("  Sources config: Not found (using defaults)")
    enabled = registry.list_enabled_sources()
    typer.echo(f"  Sources: {len(registry.list_sources())} configured, {len(enabled)} enabled")
    typer.echo(f"  Blob storage: {registry.global_config.blob_storage_path}")


if __name__ == "__main__":
    app()
