"""Steward database layer: Base, engine, session, exceptions."""

from steward.db.base import Base
from steward.db.engine import create_engine, engine_from_config, resolve_url
from steward.db.exceptions import (
    ConfigurationError,
    DatabaseError,
)
from steward.db.session import create_all, create_session_factory

__all__ = [
    "Base",
    "create_all",
    "create_engine",
    "engine_from_config",
    "resolve_url",
    "create_session_factory",
    "DatabaseError",
    "ConfigurationError",
]
