"""Per-owner daily budget ceilings."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from threading import Lock

from steward.governance.errors import BudgetExceeded


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of a soft reservation check; ``allowed=False`` forces approval."""

    allowed: bool
    current: Decimal
    amount: Decimal
    ceiling: Decimal | None

    @property
    def projected(self) -> Decimal:
        return self.current + self.amount

    def raise_for_ceiling(self) -> None:
        """Raise :class:`BudgetExceeded` when the reservation was refused."""
        if not self.allowed:
            raise BudgetExceeded(
                f"daily ceiling {self.ceiling} would be exceeded: {self.current} spent, {self.amount} requested"
            )


class BudgetCeilings:
    """Resolves the daily ceiling for an owner: explicit override, else default."""

    def __init__(
        self,
        default_daily: Decimal | float | str | None = None,
        owner_ceilings: dict[str, Decimal | float | str] | None = None,
    ) -> None:
        self._lock = Lock()
        self._default: Decimal | None = None
        self._owners: dict[str, Decimal] = {}
        self.configure(default_daily, owner_ceilings)

    @staticmethod
    def _safe_decimal(value: object) -> Decimal:
        try:
            parsed = Decimal(str(value))
        except (InvalidOperation, ValueError) as exc:
            raise ValueError(f"invalid budget ceiling: {value!r}") from exc
        if not parsed.is_finite() or parsed < 0:
            raise ValueError(f"budget ceiling must be a non-negative number: {value!r}")
        return parsed

    def configure(
        self,
        default_daily: Decimal | float | str | None,
        owner_ceilings: dict[str, Decimal | float | str] | None = None,
    ) -> None:
        """Replace every ceiling at once (used by config hot reload)."""
        default = None if default_daily is None else self._safe_decimal(default_daily)
        owners = {owner: self._safe_decimal(v) for owner, v in (owner_ceilings or {}).items()}
        with self._lock:
            self._default = default
            self._owners = owners

    def set_ceiling(self, owner: str, ceiling: Decimal | float | str) -> None:
        value = self._safe_decimal(ceiling)
        with self._lock:
            self._owners[owner] = value

    def ceiling_for(self, owner: str) -> Decimal | None:
        """Return the owner's ceiling; ``None`` means unlimited."""
        with self._lock:
            return self._owners.get(owner, self._default)

    def check(self, owner: str, current: Decimal, amount: Decimal) -> ReservationResult:
        ceiling = self.ceiling_for(owner)
        allowed = ceiling is None or current + amount <= ceiling
        return ReservationResult(allowed=allowed, current=current, amount=amount, ceiling=ceiling)
