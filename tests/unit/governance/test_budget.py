"""Unit tests for per-owner budget ceilings."""

from __future__ import annotations

from decimal import Decimal

import pytest

from steward.governance.budget import BudgetCeilings
from steward.governance.errors import BudgetExceeded


def test_owner_override_beats_default() -> None:
    ceilings = BudgetCeilings(Decimal("100"), {"alice": "25.50"})
    assert ceilings.ceiling_for("alice") == Decimal("25.50")
    assert ceilings.ceiling_for("bob") == Decimal("100")


def test_no_default_means_unlimited() -> None:
    ceilings = BudgetCeilings()
    result = ceilings.check("alice", Decimal("1000000"), Decimal("1"))
    assert result.allowed is True
    assert result.ceiling is None


def test_check_allows_exactly_reaching_the_ceiling() -> None:
    ceilings = BudgetCeilings(10)
    assert ceilings.check("alice", Decimal("7"), Decimal("3")).allowed is True
    assert ceilings.check("alice", Decimal("7"), Decimal("3.0001")).allowed is False


def test_configure_replaces_all_ceilings() -> None:
    ceilings = BudgetCeilings(10, {"alice": 5})
    ceilings.configure(20)
    assert ceilings.ceiling_for("alice") == Decimal("20")
    ceilings.set_ceiling("alice", "2")
    assert ceilings.ceiling_for("alice") == Decimal("2")


@pytest.mark.parametrize("bad", [-1, "nan", "abc", "inf"])
def test_invalid_ceiling_is_rejected(bad: object) -> None:
    with pytest.raises(ValueError):
        BudgetCeilings(bad)  # type: ignore[arg-type]


def test_refused_reservation_raises_budget_exceeded() -> None:
    ceilings = BudgetCeilings(10)
    ceilings.check("alice", Decimal("7"), Decimal("3")).raise_for_ceiling()

    with pytest.raises(BudgetExceeded) as exc_info:
        ceilings.check("alice", Decimal("7"), Decimal("4")).raise_for_ceiling()
    assert exc_info.value.http_status == 402
    assert exc_info.value.message == "daily ceiling 10 would be exceeded: 7 spent, 4 requested"
