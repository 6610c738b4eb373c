"""steward ledger: per-day cost history."""

from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

import typer

from steward.db import create_engine, create_session_factory
from steward.governance.ledger import CostLedger
from steward.governance.models import utcnow

ledger_app = typer.Typer(name="ledger", help="Inspect the cost ledger.")


def _serialize_record(record: Any) -> dict[str, Any]:
    return {
        "owner": record.owner,
        "day": record.day.isoformat() if isinstance(record.day, date) else str(record.day),
        "total_cost": str(record.total_cost) if isinstance(record.total_cost, Decimal) else record.total_cost,
    }


async def _cost_impl(owner: str, days: int, database_url: str) -> list[dict[str, Any]]:
    engine = create_engine(database_url or None)
    try:
        ledger = CostLedger(create_session_factory(engine))
        end_day = utcnow().date()
        records = await ledger.history(owner, end_day - timedelta(days=days - 1), end_day)
    finally:
        await engine.dispose()
    return [_serialize_record(row) for row in records]


@ledger_app.command("cost")
def cost_command(
    owner: str = typer.Option(..., "--owner", help="Owner whose spend to show."),
    days: int = typer.Option(7, "--days", help="Number of UTC days, ending today."),
    database_url: str = typer.Option("", "--database-url", help="Database URL (default: STEWARD_DATABASE_URL)."),
) -> None:
    """Print daily cost totals as JSON."""
    normalized_owner = owner.strip()
    if not normalized_owner:
        raise typer.BadParameter("owner must not be empty.")
    if days < 1:
        raise typer.BadParameter("days must be >= 1.")
    rows = asyncio.run(_cost_impl(normalized_owner, days, database_url.strip()))
    typer.echo(json.dumps(rows, ensure_ascii=False, indent=2))
