"""Async engines backing the SQL cost ledger and audit log."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from steward.db.exceptions import ConfigurationError

if TYPE_CHECKING:
    from steward.config.models import DatabaseConfig

URL_ENV = "STEWARD_DATABASE_URL"

_SQLITE_PREFIX = "sqlite+aiosqlite://"
_POSTGRES_PREFIX = "postgresql+asyncpg://"


def _normalize_url(url: str) -> str:
    """Map a ledger/audit database URL onto its async driver (asyncpg or aiosqlite)."""
    u = url.strip()
    if u.startswith("postgresql://"):
        return _POSTGRES_PREFIX + u[len("postgresql://") :]
    if u.startswith("sqlite://"):
        return _SQLITE_PREFIX + u[len("sqlite://") :]
    if u.startswith((_POSTGRES_PREFIX, _SQLITE_PREFIX)):
        return u
    raise ConfigurationError(
        "The cost ledger and audit log need PostgreSQL (postgresql://) or SQLite (sqlite://)."
    )


def resolve_url(database_url: str | None) -> str:
    """Use ``database_url`` when given, else ``STEWARD_DATABASE_URL``."""
    if database_url:
        return _normalize_url(database_url)
    url = os.environ.get(URL_ENV, "").strip()
    if not url:
        raise ConfigurationError(f"No database for the ledger and audit log. Set {URL_ENV} or pass database_url.")
    return _normalize_url(url)


def create_engine(
    database_url: str | None = None,
    *,
    pool_size: int = 20,
    max_overflow: int = 10,
    sqlite_timeout_seconds: float = 15.0,
    echo: bool = False,
) -> AsyncEngine:
    """Create the async engine shared by the ledger and audit log.

    SQLite serializes writers: concurrent cost postings and audit appends
    wait up to ``sqlite_timeout_seconds`` for the write lock before the
    store's retry loop sees a transient ``database is locked`` error.
    Pool sizing only applies to PostgreSQL.

    Raises:
        ConfigurationError: URL missing or not a supported backend.
    """
    url = resolve_url(database_url)
    if url.startswith(_SQLITE_PREFIX):
        return create_async_engine(url, echo=echo, connect_args={"timeout": sqlite_timeout_seconds})
    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=echo,
    )


def engine_from_config(config: DatabaseConfig) -> AsyncEngine:
    """Engine for the ``database:`` section; an empty URL falls back to the environment."""
    return create_engine(
        config.url or None,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        sqlite_timeout_seconds=config.sqlite_timeout_seconds,
        echo=config.echo,
    )
