"""Declarative base and owner mixin for Steward ORM models."""

from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all Steward ORM models.

    Every governed row belongs to exactly one owner; the column is declared
    here so no table can be created without it. Exposes metadata for Alembic.
    """

    owner: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        doc="Owner identity the row is scoped to.",
    )
