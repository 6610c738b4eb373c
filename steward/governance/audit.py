"""Append-only, hash-chained audit log.

Each owner has an independent chain: an entry's ``prev_hash`` is the
``entry_hash`` of that owner's previous entry, so rewriting or deleting any
entry breaks verification of every entry after it. Appends for one owner are
serialized; different owners never contend.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from steward.governance.models import AuditEntry, AuditOutcome, utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

AuditSubscriber = Callable[[AuditEntry], Awaitable[None] | None]


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime | date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, set | frozenset):
        return sorted(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(payload: dict[str, Any]) -> str:
    """Deterministic JSON text used for hashing."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_json_default)


def normalize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    """Reduce a payload to plain JSON types so it hashes the same after storage."""
    return json.loads(canonical_json(payload or {}))


def hash_payload(payload: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hash_entry(
    *,
    prev_hash: str,
    entry_id: str,
    owner: str,
    sequence: int,
    actor: str,
    action: str,
    target_type: str,
    target_id: str,
    timestamp: datetime,
    payload_hash: str,
    outcome: AuditOutcome,
) -> str:
    material = "|".join(
        [
            prev_hash,
            entry_id,
            owner,
            str(sequence),
            actor,
            action,
            target_type,
            target_id,
            as_utc(timestamp).isoformat(),
            payload_hash,
            outcome.value,
        ]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def build_entry(
    *,
    owner: str,
    sequence: int,
    prev_hash: str,
    actor: str,
    action: str,
    target_type: str,
    target_id: str,
    payload: dict[str, Any] | None,
    outcome: AuditOutcome,
    timestamp: datetime,
) -> AuditEntry:
    """Create the next link of a chain."""
    normalized = normalize_payload(payload)
    payload_hash = hash_payload(normalized)
    entry_id = str(uuid.uuid4())
    entry_hash = hash_entry(
        prev_hash=prev_hash,
        entry_id=entry_id,
        owner=owner,
        sequence=sequence,
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        timestamp=timestamp,
        payload_hash=payload_hash,
        outcome=outcome,
    )
    return AuditEntry(
        id=entry_id,
        owner=owner,
        sequence=sequence,
        actor=actor,
        action=action,
        target_type=target_type,
        target_id=target_id,
        timestamp=timestamp,
        payload=normalized,
        payload_hash=payload_hash,
        prev_hash=prev_hash,
        entry_hash=entry_hash,
        outcome=outcome,
    )


@dataclass(frozen=True)
class ChainVerification:
    """Result of re-hashing an owner's chain."""

    ok: bool
    checked: int
    broken_at: str | None = None
    reason: str | None = None


def verify_entries(entries: list[AuditEntry]) -> ChainVerification:
    """Verify a chain given in sequence order."""
    expected_prev = GENESIS_HASH
    for index, entry in enumerate(entries):
        if entry.prev_hash != expected_prev:
            return ChainVerification(ok=False, checked=index, broken_at=entry.id, reason="prev_hash_mismatch")
        if hash_payload(entry.payload) != entry.payload_hash:
            return ChainVerification(ok=False, checked=index, broken_at=entry.id, reason="payload_hash_mismatch")
        recomputed = hash_entry(
            prev_hash=entry.prev_hash,
            entry_id=entry.id,
            owner=entry.owner,
            sequence=entry.sequence,
            actor=entry.actor,
            action=entry.action,
            target_type=entry.target_type,
            target_id=entry.target_id,
            timestamp=entry.timestamp,
            payload_hash=entry.payload_hash,
            outcome=entry.outcome,
        )
        if recomputed != entry.entry_hash:
            return ChainVerification(ok=False, checked=index, broken_at=entry.id, reason="entry_hash_mismatch")
        expected_prev = entry.entry_hash
    return ChainVerification(ok=True, checked=len(entries))


class AuditSink(Protocol):
    """Contract every audit log implementation satisfies."""

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
    ) -> AuditEntry: ...

    async def query(
        self,
        owner: str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[AuditEntry]: ...

    async def verify(self, owner: str) -> ChainVerification: ...

    def subscribe(self, callback: AuditSubscriber) -> None: ...


class AuditLogBase:
    """Subscriber fan-out shared by the audit log implementations."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._subscribers: list[AuditSubscriber] = []

    def subscribe(self, callback: AuditSubscriber) -> None:
        """Receive every entry once it has been durably appended."""
        self._subscribers.append(callback)

    async def _publish(self, entry: AuditEntry) -> None:
        for callback in list(self._subscribers):
            try:
                result = callback(entry)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("audit subscriber failed for entry %s", entry.id)


class InMemoryAuditLog(AuditLogBase):
    """Audit log kept in process memory (Lite Mode and tests)."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._chains: dict[str, list[AuditEntry]] = {}
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
        """Append one entry to ``owner``'s chain."""
        lock = self._locks.setdefault(owner, asyncio.Lock())
        async with lock:
            chain = self._chains.setdefault(owner, [])
            tail = chain[-1] if chain else None
            entry = build_entry(
                owner=owner,
                sequence=(tail.sequence + 1) if tail else 1,
                prev_hash=tail.entry_hash if tail else GENESIS_HASH,
                actor=actor,
                action=action,
                target_type=target_type,
                target_id=target_id,
                payload=payload,
                outcome=outcome,
                timestamp=self._clock(),
            )
            chain.append(entry)
        logger.debug("audit %s %s %s/%s (%s)", owner, action, target_type, target_id, outcome.value)
        await self._publish(entry)
        return entry

    async def query(
        self,
        owner: str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[AuditEntry]:
        rows = list(self._chains.get(owner, []))
        if from_time is not None:
            rows = [row for row in rows if row.timestamp >= from_time]
        if to_time is not None:
            rows = [row for row in rows if row.timestamp <= to_time]
        rows.sort(key=lambda row: (row.timestamp, row.sequence))
        return rows

    async def verify(self, owner: str) -> ChainVerification:
        return verify_entries(list(self._chains.get(owner, [])))
