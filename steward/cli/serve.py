"""steward serve: run the governance HTTP API."""

from __future__ import annotations

import logging

import typer
import uvicorn
from rich.console import Console

from steward.api.server import GovernanceAPIServer
from steward.config import ConfigLoadError, ConfigManager, register_engine_reload_listener
from steward.engine import GovernanceEngine

console = Console()
logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def serve_command(config: str = "", host: str = "", port: int = 0) -> None:
    """Load configuration, build the engine and serve until interrupted."""
    try:
        manager = ConfigManager.load(config_path=config or None)
    except ConfigLoadError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc
    cfg = manager.get()
    configure_logging(cfg.logging.level)

    engine = GovernanceEngine.from_config(cfg)
    register_engine_reload_listener(engine, manager)
    server = GovernanceAPIServer(engine, host=host or None, port=port or None)

    bind_host = host or cfg.api.host
    bind_port = port or cfg.api.port
    if not cfg.api.tokens:
        console.print("[yellow]Warning:[/yellow] api.tokens is empty; every request will be rejected.")
    console.print(f"[green]Serving[/green] steward on http://{bind_host}:{bind_port}")
    uvicorn.run(server.app, host=bind_host, port=bind_port, log_level=cfg.logging.level.lower())
