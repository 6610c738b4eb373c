"""Unit tests for the governance engine facade."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from conftest import ADMIN, OTHER, OWNER, REVIEWER, SENIOR, FakeClock, make_config

from steward.config.models import RuleSeedConfig
from steward.db import create_all
from steward.engine import SEED_ACTOR, GovernanceEngine
from steward.governance.audit_store import AuditLog
from steward.governance.classifier import BUDGET_CEILING
from steward.governance.errors import (
    AlreadyResolved,
    Forbidden,
    InvalidRequest,
    NotFound,
    SessionClosed,
)
from steward.governance.ledger import CostLedger
from steward.governance.ledger_inmemory import InMemoryCostLedger
from steward.governance.models import ApprovalStatus, AuditOutcome, SessionStatus, TaskStatus


async def _form_rule(engine: GovernanceEngine) -> None:
    await engine.add_rule(ADMIN, {"taskType": "form_submit"}, "requireApproval", rule_id="forms")


@pytest.mark.asyncio
async def test_rule_match_creates_pending_approval(engine: GovernanceEngine) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 5)

    assert task.status == TaskStatus.PENDING
    approvals = await engine.list_approvals(OWNER)
    assert len(approvals) == 1
    assert approvals[0].status == ApprovalStatus.PENDING
    assert approvals[0].task_id == task.id
    assert approvals[0].rule_triggered == "forms@v1"


@pytest.mark.asyncio
async def test_first_decision_wins(engine: GovernanceEngine) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 5)

    await engine.decide(REVIEWER, task.approval_id or "", "approve")
    assert (await engine.get_task(OWNER, task.id)).status == TaskStatus.APPROVED
    for decision in ("approve", "deny", "escalate"):
        with pytest.raises(AlreadyResolved):
            await engine.decide(REVIEWER, task.approval_id or "", decision)


@pytest.mark.asyncio
async def test_ceiling_alone_forces_approval(engine: GovernanceEngine) -> None:
    await engine.ledger.post(OWNER, Decimal("98"), reference="earlier-work")
    session = await engine.open_session(OWNER, "shop.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "purchase", 10)

    assert await engine.list_rules(ADMIN) == []
    assert task.status == TaskStatus.PENDING
    assert task.rule_triggered == BUDGET_CEILING
    assert (await engine.get_cost(OWNER)).daily_cost == Decimal("98")


@pytest.mark.asyncio
async def test_closed_session_rejects_tasks_and_close_is_idempotent(engine: GovernanceEngine) -> None:
    session = await engine.open_session(OWNER, "x.com", "playwright")
    closed = await engine.close_session(OWNER, session.id)

    with pytest.raises(SessionClosed):
        await engine.submit_task(OWNER, session.id, "navigate")
    again = await engine.close_session(OWNER, session.id)
    assert again == closed
    assert again.status == SessionStatus.CLOSED


@pytest.mark.asyncio
async def test_actual_cost_is_posted_not_the_estimate(engine: GovernanceEngine) -> None:
    session = await engine.open_session(OWNER, "x.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "scrape", 10)
    before = (await engine.get_cost(OWNER)).daily_cost

    await engine.start_task(OWNER, task.id)
    await engine.complete_task(OWNER, task.id, 12)

    after = (await engine.get_cost(OWNER)).daily_cost
    assert after - before == Decimal("12")
    completed = [e for e in await engine.get_audit(OWNER) if e.action == "task.completed"]
    assert completed[0].payload["cost_estimate"] == "10"
    assert completed[0].payload["actual_cost"] == "12"


@pytest.mark.asyncio
async def test_every_transition_is_audited(engine: GovernanceEngine) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 1)
    await engine.decide(REVIEWER, task.approval_id or "", "approve")
    await engine.start_task(OWNER, task.id)
    await engine.complete_task(OWNER, task.id, 1)
    await engine.close_session(OWNER, session.id)

    actions = [e.action for e in await engine.get_audit(OWNER)]
    assert actions == [
        "session.opened",
        "task.submitted",
        "approval.requested",
        "approval.approved",
        "task.approved",
        "task.executing",
        "task.completed",
        "session.closed",
    ]
    assert (await engine.verify_audit(OWNER)).ok is True


@pytest.mark.asyncio
async def test_rejected_attempts_land_in_the_callers_chain(engine: GovernanceEngine) -> None:
    session = await engine.open_session(OWNER, "x.com", "playwright")
    with pytest.raises(NotFound) as exc_info:
        await engine.get_session(OTHER, session.id)

    assert exc_info.value.audited is True
    rejected = await engine.get_audit(OTHER)
    assert [(e.action, e.outcome) for e in rejected] == [("session.get.rejected", AuditOutcome.REJECTED)]
    assert rejected[0].payload == {"error": "not_found", "message": f"session not found: {session.id}"}
    assert [e.action for e in await engine.get_audit(OWNER)] == ["session.opened"]


@pytest.mark.asyncio
async def test_only_reviewers_decide(engine: GovernanceEngine) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 1)

    with pytest.raises(Forbidden):
        await engine.decide(OWNER, task.approval_id or "", "approve")
    assert (await engine.get_task(OWNER, task.id)).status == TaskStatus.PENDING
    assert (await engine.get_audit(OWNER))[-1].action == "approval.decide.rejected"


@pytest.mark.asyncio
async def test_reviewers_see_all_owners_approvals(engine: GovernanceEngine) -> None:
    await engine.add_rule(ADMIN, {}, "require_approval", rule_id="all")
    for owner in (OWNER, OTHER):
        session = await engine.open_session(owner, "x.com", "playwright")
        await engine.submit_task(owner, session.id, "navigate")

    assert {a.owner for a in await engine.list_approvals(REVIEWER)} == {OWNER, OTHER}
    mine = await engine.list_approvals(OWNER, "pending")
    assert [a.owner for a in mine] == [OWNER]
    with pytest.raises(NotFound):
        await engine.get_approval(OWNER, (await engine.list_approvals(OTHER))[0].id)
    with pytest.raises(InvalidRequest):
        await engine.list_approvals(OWNER, "bogus")


@pytest.mark.asyncio
async def test_escalation_hands_the_request_to_the_next_tier(engine: GovernanceEngine) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 1)
    approval_id = task.approval_id or ""

    escalated = await engine.decide(REVIEWER, approval_id, "escalate", "over my limit")
    assert (escalated.status, escalated.tier) == (ApprovalStatus.ESCALATED, 1)
    with pytest.raises(Forbidden):
        await engine.decide(REVIEWER, approval_id, "approve")
    assert (await engine.get_task(OWNER, task.id)).status == TaskStatus.PENDING
    assert (await engine.get_audit(REVIEWER))[-1].action == "approval.decide.rejected"

    assert engine.is_reviewer(SENIOR) is True
    approved = await engine.decide(SENIOR, approval_id, "approve")
    assert approved.decided_by == SENIOR
    assert (await engine.get_task(OWNER, task.id)).status == TaskStatus.APPROVED


@pytest.mark.asyncio
async def test_require_approval_rule_holds_tasks_under_its_threshold(engine: GovernanceEngine) -> None:
    await engine.add_rule(ADMIN, {"taskType": "purchase"}, "require_approval", 50, rule_id="purchases")
    session = await engine.open_session(OWNER, "shop.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "purchase", 5)

    assert task.status == TaskStatus.PENDING
    assert task.rule_triggered == "purchases@v1"


@pytest.mark.asyncio
async def test_rule_changes_require_admin(engine: GovernanceEngine) -> None:
    with pytest.raises(Forbidden):
        await engine.add_rule(OWNER, {}, "allow")
    rule = await engine.add_rule(ADMIN, {"task_types": ["purchase"]}, "allow", 20, rule_id="spend")
    updated = await engine.update_rule(ADMIN, "spend", threshold=30, expected_version=rule.version)
    disabled = await engine.disable_rule(ADMIN, "spend")
    enabled = await engine.enable_rule(ADMIN, "spend", disabled.version)

    assert [r.version for r in await engine.list_rules(ADMIN, "spend")] == [1, 2, 3, 4]
    assert updated.threshold == Decimal("30")
    assert enabled.enabled is True
    with pytest.raises(Forbidden):
        await engine.list_rules(OWNER)
    system_actions = [e.action for e in await engine.get_audit(engine.config.audit.system_owner)]
    assert system_actions == ["rule.added", "rule.updated", "rule.disabled", "rule.enabled"]


@pytest.mark.asyncio
async def test_expiry_denies_the_task(engine: GovernanceEngine, clock: FakeClock) -> None:
    await _form_rule(engine)
    session = await engine.open_session(OWNER, "gov.example.com", "playwright")
    task = await engine.submit_task(OWNER, session.id, "form_submit", 1)

    clock.advance(seconds=engine.config.approval.timeout_seconds)
    assert await engine.expire_due() == 1

    denied = await engine.get_task(OWNER, task.id)
    assert denied.status == TaskStatus.DENIED
    assert denied.failure_reason == "approval expired"
    assert (await engine.get_approval(OWNER, task.approval_id or "")).status == ApprovalStatus.EXPIRED


@pytest.mark.asyncio
async def test_cost_history_and_audit_range_validation(engine: GovernanceEngine, clock: FakeClock) -> None:
    today = engine.ledger.today()
    with pytest.raises(InvalidRequest):
        await engine.cost_history(OWNER, today, today - timedelta(days=1))
    with pytest.raises(InvalidRequest):
        await engine.get_audit(OWNER, clock.now, clock.now - timedelta(hours=1))
    await engine.ledger.post(OWNER, Decimal("3"), reference="t1")
    history = await engine.cost_history(OWNER, today, today)
    assert [r.total_cost for r in history] == [Decimal("3")]


@pytest.mark.asyncio
async def test_blank_owner_is_rejected(engine: GovernanceEngine) -> None:
    with pytest.raises(InvalidRequest):
        await engine.open_session(" ", "x.com")


@pytest.mark.asyncio
async def test_start_seeds_rules_from_config(clock: FakeClock) -> None:
    cfg = make_config(
        rules=[
            {"id": "forms", "action": "require_approval", "condition": {"task_types": ["form_submit"]}},
            {"id": "spend", "action": "allow", "threshold": 50, "condition": {"task_types": ["purchase"]}},
        ]
    )
    engine = GovernanceEngine(cfg, clock=clock)
    await engine.start(run_reaper=False)
    try:
        rules = await engine.list_rules(ADMIN)
        assert [(r.id, r.created_by) for r in rules] == [("forms", SEED_ACTOR), ("spend", SEED_ACTOR)]

        await engine.sync_seed_rules(
            [
                RuleSeedConfig(id="forms", action="require_approval", condition={"task_types": ["form_submit"]}),
                RuleSeedConfig(id="spend", action="allow", threshold=75, condition={"task_types": ["purchase"]}),
            ]
        )
        assert engine.rules.get("forms").version == 1
        assert engine.rules.get("spend").threshold == Decimal("75")
    finally:
        await engine.stop()


@pytest.mark.asyncio
async def test_apply_config_updates_ceilings(engine: GovernanceEngine) -> None:
    engine.apply_config(make_config(budget={"default_daily_ceiling": 5.0, "owner_ceilings": {OWNER: 1.0}}))
    assert (await engine.get_cost(OWNER)).ceiling == Decimal("1.0")
    assert (await engine.get_cost(OTHER)).ceiling == Decimal("5.0")


def test_from_config_without_database_uses_memory(clock: FakeClock) -> None:
    engine = GovernanceEngine.from_config(make_config(), clock=clock)
    assert isinstance(engine.ledger, InMemoryCostLedger)


@pytest.mark.asyncio
async def test_from_config_with_database_persists_cost_and_audit(tmp_path: Path, clock: FakeClock) -> None:
    cfg = make_config(database={"url": f"sqlite:///{tmp_path / 'engine.db'}"})
    engine = GovernanceEngine.from_config(cfg, clock=clock)
    assert isinstance(engine.ledger, CostLedger)
    assert isinstance(engine.audit, AuditLog)
    assert engine._db_engine is not None
    await create_all(engine._db_engine)
    try:
        session = await engine.open_session(OWNER, "x.com", "playwright")
        task = await engine.submit_task(OWNER, session.id, "scrape", 1)
        await engine.start_task(OWNER, task.id)
        await engine.complete_task(OWNER, task.id, "1.75")

        assert (await engine.get_cost(OWNER)).daily_cost == Decimal("1.75")
        assert (await engine.verify_audit(OWNER)).checked == 4
    finally:
        await engine.stop()
