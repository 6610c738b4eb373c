"""CLI tools: steward init, serve, reload, db, audit, ledger."""

import sys
from importlib import metadata

import typer

from steward.cli.audit import audit_app
from steward.cli.db import db_app
from steward.cli.init_config import init_config_command
from steward.cli.ledger import ledger_app
from steward.cli.reload_config import reload_config_command

app = typer.Typer(
    name="steward",
    help="Steward: governance engine for autonomous browser agents.",
)
app.add_typer(db_app, name="db")
app.add_typer(audit_app, name="audit")
app.add_typer(ledger_app, name="ledger")


def _print_version_and_exit() -> None:
    """Print installed package version and exit."""
    try:
        version = metadata.version("steward")
    except metadata.PackageNotFoundError:
        version = "unknown"
    print(f"steward {version}")
    raise SystemExit(0)


@app.command("init")
def init_command(
    path: str = typer.Option(".", "--path", help="Output directory"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing steward.yaml"),
) -> None:
    """Generate default steward.yaml in target directory."""
    try:
        init_config_command(path=path, force=force)
    except FileExistsError as exc:
        typer.echo(f"Error: {exc}. Use --force to overwrite.", err=True)
        raise typer.Exit(1) from exc


@app.command("reload")
def reload_command(
    config: str = typer.Option("", "--config", help="Optional config file path"),
) -> None:
    """Reload configuration and print applied/skipped changes."""
    reload_config_command(config=config or None)


@app.command("serve")
def serve_command(
    config: str = typer.Option("", "--config", help="Config file path (default: ./steward.yaml)"),
    host: str = typer.Option("", "--host", help="Bind host (default: api.host)"),
    port: int = typer.Option(0, "--port", help="Bind port (default: api.port)"),
) -> None:
    """Serve the governance HTTP API."""
    from steward.cli.serve import serve_command as _serve

    _serve(config=config, host=host, port=port)


def main() -> None:
    """CLI entry point: dispatches to subcommands."""
    if "--version" in sys.argv or "-V" in sys.argv:
        _print_version_and_exit()
    try:
        app()
    except KeyboardInterrupt:
        sys.exit(130)
