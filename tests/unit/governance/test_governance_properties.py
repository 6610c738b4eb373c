"""Property tests for ledger monotonicity, audit chains and rule evaluation."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from decimal import Decimal

from hypothesis import given, settings
from hypothesis import strategies as st

from steward.governance.audit import InMemoryAuditLog, verify_entries
from steward.governance.ledger_inmemory import InMemoryCostLedger
from steward.governance.rules import AdaptiveRuleEngine

_amounts = st.decimals(min_value=Decimal("0"), max_value=Decimal("1000"), places=2, allow_nan=False, allow_infinity=False)
_actions = st.sampled_from(["session.opened", "task.submitted", "approval.approved", "task.completed"])


@settings(max_examples=50, deadline=None)
@given(amounts=st.lists(_amounts, min_size=1, max_size=20))
def test_property_daily_cost_never_decreases(amounts: list[Decimal]) -> None:
    """Property: every post leaves the aggregate >= before and ends at the exact sum."""

    async def _run() -> None:
        ledger = InMemoryCostLedger()
        previous = Decimal("0")
        for index, amount in enumerate(amounts):
            total = await ledger.post("alice", amount, reference=f"t{index}")
            assert total >= previous
            previous = total
        assert await ledger.get_daily_cost("alice") == sum(amounts, Decimal("0"))

    asyncio.run(_run())


@settings(max_examples=30, deadline=None)
@given(
    actions=st.lists(_actions, min_size=1, max_size=15),
    payload=st.dictionaries(st.text(min_size=1, max_size=8), st.integers() | st.text(max_size=8), max_size=4),
)
def test_property_appended_chain_verifies(actions: list[str], payload: dict[str, object]) -> None:
    """Property: an untouched chain verifies and any payload rewrite is detected."""

    async def _run() -> None:
        log = InMemoryAuditLog()
        for index, action in enumerate(actions):
            await log.append(
                owner="alice",
                actor="alice",
                action=action,
                target_type="task",
                target_id=str(index),
                payload=payload,
            )
        entries = await log.query("alice")
        assert verify_entries(entries).ok is True
        assert [e.sequence for e in entries] == list(range(1, len(actions) + 1))

        forged = list(entries)
        forged[-1] = replace(forged[-1], payload={**forged[-1].payload, "__forged__": True})
        assert verify_entries(forged).ok is False

    asyncio.run(_run())


@settings(max_examples=30, deadline=None)
@given(threshold=_amounts, estimate=_amounts, action=st.sampled_from(["allow", "require_approval"]))
def test_property_threshold_forces_review_above_it(threshold: Decimal, estimate: Decimal, action: str) -> None:
    """Property: a thresholded rule forces review above its threshold; require_approval always does."""

    async def _run() -> None:
        rules = AdaptiveRuleEngine(InMemoryAuditLog())
        await rules.add_rule({"task_types": ["purchase"]}, action, threshold, actor="ada", rule_id="spend")
        first = rules.evaluate("purchase", "shop.example.com", estimate)
        second = rules.evaluate("purchase", "shop.example.com", estimate)
        assert first == second
        assert first[0].forces_approval is (action == "require_approval" or estimate > threshold)

    asyncio.run(_run())
