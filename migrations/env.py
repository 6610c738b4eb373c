"""Alembic environment: uses STEWARD_DATABASE_URL and steward.db.Base."""

import asyncio
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy.engine import Connection

# Import models so their tables are attached to Base.metadata for Alembic
from steward.db import Base, create_engine
from steward.db.engine import _normalize_url
from steward.governance.audit_store import AuditEntryRecord  # noqa: F401
from steward.governance.ledger import CostPostingRecord, DailyCostRecord  # noqa: F401

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _get_url() -> str:
    """Get the async database URL (asyncpg or aiosqlite)."""
    url = os.environ.get("STEWARD_DATABASE_URL") or config.get_main_option("sqlalchemy.url")
    if not url or not url.strip():
        raise RuntimeError(
            "Set STEWARD_DATABASE_URL or sqlalchemy.url in alembic.ini for migrations."
        )
    return _normalize_url(url)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (SQL only, no DB connection)."""
    context.configure(
        url=_get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def _run_async_migrations() -> None:
    engine = create_engine(_get_url())
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (connect to DB)."""
    asyncio.run(_run_async_migrations())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
