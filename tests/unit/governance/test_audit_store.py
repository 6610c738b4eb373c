"""Unit tests for the database-backed audit log (SQLite via aiosqlite)."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest
from conftest import OTHER, OWNER, FakeClock
from sqlalchemy import update

from steward.governance.audit import GENESIS_HASH
from steward.governance.audit_store import AuditEntryRecord, AuditLog


@pytest.mark.asyncio
async def test_append_persists_a_verifiable_chain(session_factory, clock: FakeClock) -> None:
    log = AuditLog(session_factory, clock=clock)
    first = await log.append(
        owner=OWNER,
        actor=OWNER,
        action="task.completed",
        target_type="task",
        target_id="t1",
        payload={"actual_cost": Decimal("1.10")},
    )
    clock.advance(seconds=1)
    second = await log.append(owner=OWNER, actor=OWNER, action="session.closed", target_type="session", target_id="s1")

    assert first.prev_hash == GENESIS_HASH
    assert second.prev_hash == first.entry_hash
    rows = await log.query(OWNER)
    assert [row.id for row in rows] == [first.id, second.id]
    assert rows[0].payload == {"actual_cost": "1.10"}
    assert rows[0].entry_hash == first.entry_hash

    result = await log.verify(OWNER)
    assert result.ok is True
    assert result.checked == 2


@pytest.mark.asyncio
async def test_owner_chains_are_independent(session_factory, clock: FakeClock) -> None:
    log = AuditLog(session_factory, clock=clock)
    await log.append(owner=OWNER, actor=OWNER, action="a", target_type="t", target_id="1")
    other = await log.append(owner=OTHER, actor=OTHER, action="a", target_type="t", target_id="1")

    assert other.sequence == 1
    assert other.prev_hash == GENESIS_HASH
    assert [row.owner for row in await log.query(OTHER)] == [OTHER]


@pytest.mark.asyncio
async def test_tampered_row_fails_verification(session_factory, clock: FakeClock) -> None:
    log = AuditLog(session_factory, clock=clock)
    await log.append(owner=OWNER, actor=OWNER, action="a", target_type="t", target_id="1", payload={"n": 1})
    target = await log.append(owner=OWNER, actor=OWNER, action="b", target_type="t", target_id="2", payload={"n": 2})
    await log.append(owner=OWNER, actor=OWNER, action="c", target_type="t", target_id="3", payload={"n": 3})

    async with session_factory() as session:
        await session.execute(
            update(AuditEntryRecord).where(AuditEntryRecord.id == target.id).values(payload={"n": 200})
        )
        await session.commit()

    result = await log.verify(OWNER)
    assert result.ok is False
    assert result.broken_at == target.id
    assert result.checked == 1


@pytest.mark.asyncio
async def test_query_time_range(session_factory, clock: FakeClock) -> None:
    log = AuditLog(session_factory, clock=clock)
    start = clock.now
    await log.append(owner=OWNER, actor=OWNER, action="a", target_type="t", target_id="1")
    clock.advance(hours=1)
    await log.append(owner=OWNER, actor=OWNER, action="b", target_type="t", target_id="2")

    rows = await log.query(OWNER, from_time=start.replace(minute=30))
    assert [row.action for row in rows] == ["b"]


@pytest.mark.asyncio
async def test_concurrent_appends_keep_the_chain_verifiable(session_factory, clock: FakeClock) -> None:
    log = AuditLog(session_factory, clock=clock, max_attempts=12, backoff_base_seconds=0.01)

    entries = await asyncio.gather(
        *(
            log.append(owner=OWNER, actor=OWNER, action="task.submitted", target_type="task", target_id=f"t{i}")
            for i in range(12)
        ),
        log.append(owner=OTHER, actor=OTHER, action="session.opened", target_type="session", target_id="s1"),
    )

    assert sorted(e.sequence for e in entries if e.owner == OWNER) == list(range(1, 13))
    rows = await log.query(OWNER)
    assert [row.sequence for row in rows] == list(range(1, 13))
    assert all(row.prev_hash == prev.entry_hash for prev, row in zip(rows, rows[1:]))
    result = await log.verify(OWNER)
    assert result.ok is True
    assert result.checked == 12
    assert (await log.verify(OTHER)).ok is True
