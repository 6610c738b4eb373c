"""Database-backed audit log.

The unique ``(owner, sequence)`` constraint is the compare-and-swap on the
chain tail: two writers that read the same tail race to insert the same
sequence number, one wins, the loser retries against the new tail.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from steward.db import Base
from steward.governance.audit import (
    GENESIS_HASH,
    AuditLogBase,
    ChainVerification,
    as_utc,
    build_entry,
    verify_entries,
)
from steward.governance.models import AuditEntry, AuditOutcome, utcnow
from steward.governance.retry import retry_transient

logger = logging.getLogger(__name__)


class AuditEntryRecord(Base):
    """Persisted audit chain link."""

    __tablename__ = "audit_entries"
    __table_args__ = (
        UniqueConstraint("owner", "sequence", name="uq_audit_owner_sequence"),
        Index("idx_audit_owner_timestamp", "owner", "timestamp"),
        {"comment": "Hash-chained governance audit trail, append-only"},
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    target_type: Mapped[str] = mapped_column(String(64), nullable=False)
    target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    payload_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)


def _to_entry(record: AuditEntryRecord) -> AuditEntry:
    return AuditEntry(
        id=record.id,
        owner=record.owner,
        sequence=record.sequence,
        actor=record.actor,
        action=record.action,
        target_type=record.target_type,
        target_id=record.target_id,
        timestamp=as_utc(record.timestamp),
        payload=dict(record.payload or {}),
        payload_hash=record.payload_hash,
        prev_hash=record.prev_hash,
        entry_hash=record.entry_hash,
        outcome=AuditOutcome(record.outcome),
    )


class AuditLog(AuditLogBase):
    """Audit log persisted through SQLAlchemy async sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._backoff_base_seconds = backoff_base_seconds
        self._locks: dict[str, asyncio.Lock] = {}

    async def append(
        self,
        *,
        owner: str,
        actor: str,
        action: str,
        target_type: str,
        target_id: str,
        payload: dict[str, Any] | None = None,
        outcome: AuditOutcome = AuditOutcome.COMMITTED,
    ) -> AuditEntry:
        """Append one entry; commits before returning."""

        async def _attempt() -> AuditEntry:
            async with self._session_factory() as session:
                tail_stmt = (
                    select(AuditEntryRecord.sequence, AuditEntryRecord.entry_hash)
                    .where(AuditEntryRecord.owner == owner)
                    .order_by(AuditEntryRecord.sequence.desc())
                    .limit(1)
                )
                tail = (await session.execute(tail_stmt)).first()
                entry = build_entry(
                    owner=owner,
                    sequence=(tail[0] + 1) if tail else 1,
                    prev_hash=tail[1] if tail else GENESIS_HASH,
                    actor=actor,
                    action=action,
                    target_type=target_type,
                    target_id=target_id,
                    payload=payload,
                    outcome=outcome,
                    timestamp=self._clock(),
                )
                session.add(
                    AuditEntryRecord(
                        id=entry.id,
                        owner=entry.owner,
                        sequence=entry.sequence,
                        actor=entry.actor,
                        action=entry.action,
                        target_type=entry.target_type,
                        target_id=entry.target_id,
                        timestamp=entry.timestamp,
                        payload=entry.payload,
                        payload_hash=entry.payload_hash,
                        prev_hash=entry.prev_hash,
                        entry_hash=entry.entry_hash,
                        outcome=entry.outcome.value,
                    )
                )
                await session.commit()
                return entry

        # Local writers queue here; writers in other processes race on the constraint.
        lock = self._locks.setdefault(owner, asyncio.Lock())
        async with lock:
            entry = await retry_transient(
                _attempt,
                label=f"audit append for {owner}",
                max_attempts=self._max_attempts,
                backoff_base_seconds=self._backoff_base_seconds,
            )
        await self._publish(entry)
        return entry

    async def query(
        self,
        owner: str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[AuditEntry]:
        async with self._session_factory() as session:
            stmt = select(AuditEntryRecord).where(AuditEntryRecord.owner == owner)
            if from_time is not None:
                stmt = stmt.where(AuditEntryRecord.timestamp >= from_time)
            if to_time is not None:
                stmt = stmt.where(AuditEntryRecord.timestamp <= to_time)
            stmt = stmt.order_by(AuditEntryRecord.timestamp.asc(), AuditEntryRecord.sequence.asc())
            result = await session.execute(stmt)
            return [_to_entry(row) for row in result.scalars().all()]

    async def verify(self, owner: str) -> ChainVerification:
        async with self._session_factory() as session:
            stmt = (
                select(AuditEntryRecord)
                .where(AuditEntryRecord.owner == owner)
                .order_by(AuditEntryRecord.sequence.asc())
            )
            result = await session.execute(stmt)
            entries = [_to_entry(row) for row in result.scalars().all()]
        return verify_entries(entries)
