"""Cost ledger: per-owner, per-UTC-day spend aggregation.

``post`` is the only write path. It increments the (owner, day) aggregate
atomically in the database and records a posting keyed by a caller-supplied
reference, so a retried completion cannot count the same cost twice.
Aggregates are never decremented or deleted; a new UTC day simply starts a
new key.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

from sqlalchemy import DECIMAL, Date, DateTime, Index, String, UniqueConstraint, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from steward.db import Base
from steward.governance.budget import BudgetCeilings, ReservationResult
from steward.governance.errors import InvalidRequest
from steward.governance.models import CostRecord, utcnow
from steward.governance.retry import retry_transient

logger = logging.getLogger(__name__)


def to_amount(value: Any, field_name: str = "amount") -> Decimal:
    """Parse a non-negative, finite monetary amount."""
    if isinstance(value, bool):
        raise InvalidRequest(f"{field_name} must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRequest(f"{field_name} must be a number") from exc
    if not amount.is_finite():
        raise InvalidRequest(f"{field_name} must be finite")
    if amount < 0:
        raise InvalidRequest(f"{field_name} must not be negative")
    return amount


class CostLedgerProtocol(Protocol):
    ceilings: BudgetCeilings

    def today(self) -> date: ...

    async def get_daily_cost(self, owner: str) -> Decimal: ...

    async def reserve(self, owner: str, amount: Decimal) -> ReservationResult: ...

    async def post(self, owner: str, amount: Decimal, reference: str) -> Decimal: ...

    async def history(self, owner: str, start_day: date, end_day: date) -> list[CostRecord]: ...


class LedgerBase:
    """Ceiling checks and day keys shared by ledger implementations."""

    def __init__(
        self,
        ceilings: BudgetCeilings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ceilings = ceilings if ceilings is not None else BudgetCeilings()
        self._clock = clock

    def today(self) -> date:
        """Current UTC day key."""
        return self._clock().date()

    async def get_daily_cost(self, owner: str) -> Decimal:  # pragma: no cover - abstract
        raise NotImplementedError

    async def reserve(self, owner: str, amount: Decimal) -> ReservationResult:
        """Soft check: would ``amount`` keep the owner under today's ceiling?

        Never posts and never raises on breach; a denial is a classification
        signal, not an error.
        """
        value = to_amount(amount, "cost_estimate")
        current = await self.get_daily_cost(owner)
        result = self.ceilings.check(owner, current, value)
        if not result.allowed:
            logger.info(
                "reservation denied owner=%s current=%s amount=%s ceiling=%s",
                owner,
                current,
                value,
                result.ceiling,
            )
        return result

    @staticmethod
    def _require_reference(reference: str) -> str:
        if not isinstance(reference, str) or not reference.strip():
            raise InvalidRequest("posting reference must be a non-empty string")
        return reference.strip()


class DailyCostRecord(Base):
    """Aggregate spend for one owner on one UTC day."""

    __tablename__ = "cost_records"
    __table_args__ = (
        UniqueConstraint("owner", "day", name="uq_cost_owner_day"),
        {"comment": "Per-owner daily spend aggregates; monotonically non-decreasing"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    day: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    total_cost: Mapped[Decimal] = mapped_column(DECIMAL(14, 4), nullable=False, default=Decimal("0"))


class CostPostingRecord(Base):
    """One posted actual cost; the reference makes posting idempotent."""

    __tablename__ = "cost_postings"
    __table_args__ = (
        UniqueConstraint("owner", "reference", name="uq_cost_posting_reference"),
        Index("idx_cost_postings_owner_day", "owner", "day"),
        {"comment": "Individual cost postings backing cost_records"},
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    day: Mapped[date] = mapped_column(Date, nullable=False)
    reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount: Mapped[Decimal] = mapped_column(DECIMAL(14, 4), nullable=False)
    posted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


class CostLedger(LedgerBase):
    """Cost ledger persisted through SQLAlchemy async sessions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ceilings: BudgetCeilings | None = None,
        *,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(ceilings, clock=clock)
        self._session_factory = session_factory
        self._max_attempts = max_attempts
        self._backoff_base_seconds = backoff_base_seconds

    async def get_daily_cost(self, owner: str) -> Decimal:
        async with self._session_factory() as session:
            return await self._total(session, owner, self.today())

    @staticmethod
    async def _total(session: AsyncSession, owner: str, day: date) -> Decimal:
        stmt = select(DailyCostRecord.total_cost).where(
            DailyCostRecord.owner == owner,
            DailyCostRecord.day == day,
        )
        return _decimal((await session.execute(stmt)).scalar_one_or_none())

    async def post(self, owner: str, amount: Decimal, reference: str) -> Decimal:
        """Atomically add ``amount`` to today's aggregate and return the new total."""
        value = to_amount(amount, "actual_cost")
        ref = self._require_reference(reference)

        async def _attempt() -> Decimal:
            day = self.today()
            async with self._session_factory() as session:
                async with session.begin():
                    seen_stmt = select(CostPostingRecord.id).where(
                        CostPostingRecord.owner == owner,
                        CostPostingRecord.reference == ref,
                    )
                    if (await session.execute(seen_stmt)).first() is not None:
                        logger.info("duplicate cost posting ignored owner=%s reference=%s", owner, ref)
                        return await self._total(session, owner, day)

                    session.add(
                        CostPostingRecord(
                            owner=owner,
                            day=day,
                            reference=ref,
                            amount=value,
                            posted_at=self._clock(),
                        )
                    )
                    await session.flush()
                    result = await session.execute(
                        update(DailyCostRecord)
                        .where(DailyCostRecord.owner == owner, DailyCostRecord.day == day)
                        .values(total_cost=DailyCostRecord.total_cost + value)
                    )
                    if result.rowcount == 0:
                        session.add(DailyCostRecord(owner=owner, day=day, total_cost=value))
                        await session.flush()
                    return await self._total(session, owner, day)

        total = await retry_transient(
            _attempt,
            label=f"cost post for {owner}",
            max_attempts=self._max_attempts,
            backoff_base_seconds=self._backoff_base_seconds,
        )
        logger.info("cost posted owner=%s amount=%s daily_total=%s", owner, value, total)
        return total

    async def history(self, owner: str, start_day: date, end_day: date) -> list[CostRecord]:
        async with self._session_factory() as session:
            stmt = (
                select(DailyCostRecord)
                .where(DailyCostRecord.owner == owner)
                .where(DailyCostRecord.day >= start_day)
                .where(DailyCostRecord.day <= end_day)
                .order_by(DailyCostRecord.day.asc())
            )
            result = await session.execute(stmt)
            return [
                CostRecord(owner=row.owner, day=row.day, total_cost=_decimal(row.total_cost))
                for row in result.scalars().all()
            ]
