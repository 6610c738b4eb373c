"""Session registry: bounded units of agent-provider interaction."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any

from steward.governance.audit import AuditSink
from steward.governance.errors import InvalidRequest, NotFound
from steward.governance.models import Session, SessionStatus, SessionType, utcnow

logger = logging.getLogger(__name__)

PLAYWRIGHT = "playwright"
AGENT_BROWSER = "agent-browser"
DEFAULT_PAGE_SIZE = 20


def select_provider(complexity: int = 5, requires_vision: bool = False, high_risk: bool = False) -> str:
    """Pick a provider when the caller did not name one.

    Vision work, complexity above 7 and high-risk work go to the AI-driven
    browser; everything else to plain scripted automation.
    """
    if requires_vision or complexity > 7 or high_risk:
        return AGENT_BROWSER
    return PLAYWRIGHT


def _required_str(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest(f"{name} must be a non-empty string")
    return value.strip()


def _provider_hints(metadata: dict[str, Any]) -> tuple[int, bool, bool]:
    complexity = metadata.get("complexity", 5)
    if isinstance(complexity, bool) or not isinstance(complexity, int | float):
        raise InvalidRequest("metadata.complexity must be a number")
    return int(complexity), bool(metadata.get("requires_vision")), bool(metadata.get("high_risk"))


class SessionRegistry:
    """In-process session store; every transition is audited before it is visible."""

    def __init__(self, audit: AuditSink, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._audit = audit
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def open(
        self,
        owner: str,
        domain: str,
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        session_type: str | SessionType | None = None,
        tags: list[str] | tuple[str, ...] | None = None,
    ) -> Session:
        owner = _required_str(owner, "owner")
        domain = _required_str(domain, "domain")
        data = metadata or {}
        if not isinstance(data, dict):
            raise InvalidRequest("metadata must be an object")
        if provider is None:
            provider = select_provider(*_provider_hints(data))
        provider = _required_str(provider, "provider")
        try:
            kind = SessionType(session_type) if session_type is not None else SessionType.GENERAL
        except ValueError as exc:
            raise InvalidRequest(f"unknown session_type: {session_type}") from exc
        tag_list = list(tags or [])
        if not all(isinstance(tag, str) for tag in tag_list):
            raise InvalidRequest("tags must be a list of strings")

        session = Session(
            id=str(uuid.uuid4()),
            owner=owner,
            domain=domain,
            provider=provider,
            status=SessionStatus.ACTIVE,
            started_at=self._clock(),
            metadata=dict(data),
            session_type=kind,
            tags=tuple(tag_list),
        )
        await self._audit.append(
            owner=owner,
            actor=owner,
            action="session.opened",
            target_type="session",
            target_id=session.id,
            payload={
                "domain": domain,
                "provider": provider,
                "session_type": kind.value,
                "tags": list(session.tags),
            },
        )
        self._sessions[session.id] = session
        logger.info("session opened id=%s owner=%s provider=%s", session.id, owner, provider)
        return session

    def _lookup(self, session_id: str, owner: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            raise NotFound("session", session_id)
        return session

    async def get(self, session_id: str, owner: str) -> Session:
        return self._lookup(session_id, owner)

    async def list(self, owner: str, limit: int | None = None, offset: int = 0) -> list[Session]:
        """Newest-first sessions of ``owner``, optionally paged."""
        if offset < 0 or (limit is not None and limit < 0):
            raise InvalidRequest("limit and offset must be non-negative")
        rows = [row for row in self._sessions.values() if row.owner == owner]
        rows.sort(key=lambda row: row.started_at, reverse=True)
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def close(self, session_id: str, owner: str) -> Session:
        """Close a session; closing an already-closed session is a no-op."""
        current = self._lookup(session_id, owner)
        if not current.is_active:
            return current
        async with self._lock(session_id):
            session = self._lookup(session_id, owner)
            if not session.is_active:
                return session
            closed = replace(session, status=SessionStatus.CLOSED, ended_at=self._clock())
            await self._audit.append(
                owner=owner,
                actor=owner,
                action="session.closed",
                target_type="session",
                target_id=session_id,
                payload={"started_at": session.started_at, "ended_at": closed.ended_at},
            )
            self._sessions[session_id] = closed
            # Closed is final; waiters already queued on this lock see it.
            self._locks.pop(session_id, None)
        logger.info("session closed id=%s owner=%s", session_id, owner)
        return closed

    @asynccontextmanager
    async def hold(self, session_id: str, owner: str) -> AsyncIterator[Session]:
        """Hold the session's lock and yield its current value.

        ``close`` cannot interleave with work done inside the block. A closed
        session is yielded without locking.
        """
        session = self._lookup(session_id, owner)
        if not session.is_active:
            yield session
            return
        async with self._lock(session_id):
            yield self._lookup(session_id, owner)

    def _lock(self, session_id: str) -> asyncio.Lock:
        return self._locks.setdefault(session_id, asyncio.Lock())
