"""steward audit: query and verify an owner's audit chain."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any

import typer
from rich.console import Console

from steward.api.handler import to_json
from steward.db import create_engine, create_session_factory
from steward.governance.audit import ChainVerification
from steward.governance.audit_store import AuditLog

audit_app = typer.Typer(name="audit", help="Inspect the hash-chained audit log.")
console = Console()


def _parse_time(value: str, option: str) -> datetime | None:
    if not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise typer.BadParameter(f"{option} must be an ISO-8601 timestamp.") from exc
    if parsed.tzinfo is None:
        raise typer.BadParameter(f"{option} must include a timezone.")
    return parsed


async def _query_impl(
    owner: str,
    from_time: datetime | None,
    to_time: datetime | None,
    database_url: str,
) -> list[dict[str, Any]]:
    engine = create_engine(database_url or None)
    try:
        log = AuditLog(create_session_factory(engine))
        entries = await log.query(owner, from_time, to_time)
    finally:
        await engine.dispose()
    return [to_json(entry) for entry in entries]


async def _verify_impl(owner: str, database_url: str) -> ChainVerification:
    engine = create_engine(database_url or None)
    try:
        return await AuditLog(create_session_factory(engine)).verify(owner)
    finally:
        await engine.dispose()


@audit_app.command("query")
def query_command(
    owner: str = typer.Option(..., "--owner", help="Owner whose chain to read."),
    from_time: str = typer.Option("", "--from", help="Inclusive lower bound (ISO-8601)."),
    to_time: str = typer.Option("", "--to", help="Inclusive upper bound (ISO-8601)."),
    database_url: str = typer.Option("", "--database-url", help="Database URL (default: STEWARD_DATABASE_URL)."),
) -> None:
    """Print an owner's audit entries as JSON."""
    if not owner.strip():
        raise typer.BadParameter("owner must not be empty.")
    rows = asyncio.run(
        _query_impl(
            owner.strip(),
            _parse_time(from_time, "--from"),
            _parse_time(to_time, "--to"),
            database_url.strip(),
        )
    )
    typer.echo(json.dumps(rows, ensure_ascii=False, indent=2))


@audit_app.command("verify")
def verify_command(
    owner: str = typer.Option(..., "--owner", help="Owner whose chain to verify."),
    database_url: str = typer.Option("", "--database-url", help="Database URL (default: STEWARD_DATABASE_URL)."),
) -> None:
    """Recompute the owner's hash chain; exits 1 when it is broken."""
    if not owner.strip():
        raise typer.BadParameter("owner must not be empty.")
    result = asyncio.run(_verify_impl(owner.strip(), database_url.strip()))
    if result.ok:
        console.print(f"[green]OK[/green] {result.checked} entries verified for {owner.strip()}")
        return
    console.print(
        f"[red]BROKEN[/red] at entry {result.broken_at} ({result.reason}); "
        f"{result.checked} entries verified before it"
    )
    raise typer.Exit(1)
