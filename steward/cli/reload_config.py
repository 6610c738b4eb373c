"""steward reload: re-read steward.yaml and report what a running engine picked up."""

from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.table import Table

from steward.config import ConfigManager, ReloadResult

console = Console()


def _render(result: ReloadResult) -> Table:
    table = Table(title="Config changes")
    table.add_column("Key")
    table.add_column("New value")
    table.add_column("Effect")
    for key, value in sorted(result.applied.items()):
        table.add_row(key, repr(value), "[green]applied[/green]")
    for key, value in sorted(result.skipped.items()):
        table.add_row(key, repr(value), "[yellow]restart required[/yellow]")
    return table


def reload_config_command(config: str | None = None) -> ReloadResult:
    """Reload configuration; ceilings, approval deadlines, seed rules and roles apply live."""
    if config is not None and not Path(config).exists():
        console.print(f"[yellow]Note:[/yellow] {config} not found; defaults, env and overrides were used")
    result = ConfigManager.instance().reload(config_path=config)

    if not result.applied and not result.skipped:
        console.print("No configuration changes.")
        return result
    console.print(_render(result))
    if result.engine_sections:
        console.print(f"Engine updated: {', '.join(result.engine_sections)}")
    else:
        console.print("Engine unchanged.")
    if result.skipped:
        console.print(f"[yellow]{len(result.skipped)} change(s) take effect after restart.[/yellow]")
    return result
