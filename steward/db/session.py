"""Session factory and table bootstrap for the ledger and audit stores."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from steward.db.base import Base


def create_session_factory(
    engine: AsyncEngine,
) -> async_sessionmaker[AsyncSession]:
    """Session factory for the stores; each operation opens and commits its own session."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def create_all(engine: AsyncEngine) -> None:
    """Create every Steward table that does not exist yet (development helper)."""
    # Model modules register their tables on Base.metadata when imported.
    import steward.governance.audit_store  # noqa: F401
    import steward.governance.ledger  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
