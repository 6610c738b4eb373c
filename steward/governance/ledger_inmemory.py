"""In-memory cost ledger for Lite Mode: no database required.

Drop-in replacement for :class:`CostLedger`. Each (owner, day) aggregate is
guarded by its own lock, which is the only serialization point for posts.

Records are lost on process exit.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal

from steward.governance.budget import BudgetCeilings
from steward.governance.ledger import LedgerBase, to_amount
from steward.governance.models import CostRecord, utcnow

logger = logging.getLogger(__name__)


class InMemoryCostLedger(LedgerBase):
    """In-memory cost ledger: same public interface as :class:`CostLedger`."""

    def __init__(
        self,
        ceilings: BudgetCeilings | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(ceilings, clock=clock)
        self._totals: dict[tuple[str, date], Decimal] = {}
        self._references: dict[str, set[str]] = {}
        self._locks: dict[tuple[str, date], asyncio.Lock] = {}

    async def get_daily_cost(self, owner: str) -> Decimal:
        return self._totals.get((owner, self.today()), Decimal("0"))

    async def post(self, owner: str, amount: Decimal, reference: str) -> Decimal:
        """Add ``amount`` to today's aggregate; duplicate references are no-ops."""
        value = to_amount(amount, "actual_cost")
        ref = self._require_reference(reference)
        key = (owner, self.today())
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            seen = self._references.setdefault(owner, set())
            if ref in seen:
                logger.info("duplicate cost posting ignored owner=%s reference=%s", owner, ref)
                return self._totals.get(key, Decimal("0"))
            total = self._totals.get(key, Decimal("0")) + value
            self._totals[key] = total
            seen.add(ref)
        logger.info("cost posted owner=%s amount=%s daily_total=%s", owner, value, total)
        return total

    async def history(self, owner: str, start_day: date, end_day: date) -> list[CostRecord]:
        rows = [
            CostRecord(owner=key_owner, day=day, total_cost=total)
            for (key_owner, day), total in self._totals.items()
            if key_owner == owner and start_day <= day <= end_day
        ]
        rows.sort(key=lambda row: row.day)
        return rows
