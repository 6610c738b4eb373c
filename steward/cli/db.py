"""steward db: init, migrate (database CLI)."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer
from alembic import command
from alembic.config import Config
from sqlalchemy.exc import SQLAlchemyError

from steward.db import ConfigurationError, create_all, create_engine

db_app = typer.Typer(
    name="db",
    help="Database operations: init, migrate.",
)

MIGRATIONS_DIR = Path(__file__).resolve().parents[2] / "migrations"


async def _init_impl(database_url: str) -> None:
    engine = create_engine(database_url or None)
    try:
        await create_all(engine)
    finally:
        await engine.dispose()


@db_app.command("init")
def init_command(
    database_url: str = typer.Option(
        "",
        "--database-url",
        help="Database URL (default: STEWARD_DATABASE_URL).",
    ),
) -> None:
    """Create the ledger and audit tables if they do not exist."""
    try:
        asyncio.run(_init_impl(database_url.strip()))
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc
    except SQLAlchemyError as exc:
        typer.echo(f"Error: could not create tables: {type(exc).__name__}", err=True)
        raise typer.Exit(1) from exc
    typer.echo("Tables created.")


@db_app.command("migrate")
def migrate_command(
    target: str = typer.Option("head", "--target", "-t", help="Revision to upgrade to (default: head)."),
    database_url: str = typer.Option(
        "",
        "--database-url",
        help="Database URL (default: STEWARD_DATABASE_URL).",
    ),
) -> None:
    """Run schema migrations (Alembic upgrade)."""
    normalized_target = target.strip()
    if not normalized_target:
        typer.echo("Error: --target must be a non-empty revision string.", err=True)
        raise typer.Exit(2)
    url = database_url.strip() or os.environ.get("STEWARD_DATABASE_URL", "").strip()
    if not url:
        typer.echo("Error: Set STEWARD_DATABASE_URL or pass --database-url.", err=True)
        raise typer.Exit(2)
    os.environ["STEWARD_DATABASE_URL"] = url
    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    command.upgrade(alembic_cfg, normalized_target)
    typer.echo("Migrations applied.")
