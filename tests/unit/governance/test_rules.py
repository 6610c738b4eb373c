"""Unit tests for versioned adaptive rules."""

from __future__ import annotations

from decimal import Decimal

import pytest
from conftest import ADMIN, FakeClock

from steward.governance.audit import InMemoryAuditLog
from steward.governance.errors import InternalError, InvalidRequest, NotFound, RuleConflict
from steward.governance.models import RuleAction, RuleCondition
from steward.governance.rules import (
    AdaptiveRuleEngine,
    EvaluationContext,
    matches,
    parse_action,
    parse_condition,
)


def test_parse_condition_accepts_aliases_and_scalars() -> None:
    condition = parse_condition({"taskType": "purchase", "domain": "*.shop.com", "activeHours": [22, 6]})
    assert condition == RuleCondition(task_types=("purchase",), domains=("*.shop.com",), active_hours=(22, 6))


def test_parse_condition_rejects_unknown_fields_and_bad_values() -> None:
    with pytest.raises(InvalidRequest):
        parse_condition({"colour": "red"})
    with pytest.raises(InvalidRequest):
        parse_condition({"active_hours": [25, 3]})
    with pytest.raises(InvalidRequest):
        parse_condition({"min_denial_rate": 1.5})
    with pytest.raises(InvalidRequest):
        parse_condition({"task_types": [1, 2]})


def test_parse_action_aliases() -> None:
    assert parse_action("requireApproval") == RuleAction.REQUIRE_APPROVAL
    assert parse_action("allow") == RuleAction.ALLOW
    with pytest.raises(InvalidRequest):
        parse_action("maybe")


def test_matches_domain_globs_case_insensitively() -> None:
    condition = RuleCondition(domains=("*.Bank.com",))
    ctx = EvaluationContext()
    assert matches(condition, "navigate", "login.bank.com", ctx) is True
    assert matches(condition, "navigate", "bank.org", ctx) is False


def test_matches_active_hours_wrapping_midnight() -> None:
    condition = RuleCondition(active_hours=(22, 6))
    assert matches(condition, "scrape", "x.com", EvaluationContext(hour=23)) is True
    assert matches(condition, "scrape", "x.com", EvaluationContext(hour=3)) is True
    assert matches(condition, "scrape", "x.com", EvaluationContext(hour=12)) is False


def test_matches_provider_category_and_denial_rate() -> None:
    condition = RuleCondition(providers=("agent-browser",), categories=("financial",), min_denial_rate=0.5)
    hit = EvaluationContext(provider="agent-browser", category="financial", recent_denial_rate=0.6)
    assert matches(condition, "purchase", "x.com", hit) is True
    assert matches(condition, "purchase", "x.com", EvaluationContext(provider="playwright", category="financial", recent_denial_rate=0.6)) is False
    assert matches(condition, "purchase", "x.com", EvaluationContext(provider="agent-browser", category="financial", recent_denial_rate=0.1)) is False


@pytest.mark.asyncio
async def test_add_rule_is_audited_under_system_owner(audit_log: InMemoryAuditLog, clock: FakeClock) -> None:
    engine = AdaptiveRuleEngine(audit_log, system_owner="system", clock=clock)
    rule = await engine.add_rule({"task_types": ["form_submit"]}, "require_approval", actor=ADMIN, rule_id="forms")

    assert rule.ref == "forms@v1"
    assert rule.created_by == ADMIN
    entries = await audit_log.query("system")
    assert [(e.action, e.actor, e.target_id) for e in entries] == [("rule.added", ADMIN, "forms")]
    with pytest.raises(RuleConflict):
        await engine.add_rule({}, "allow", actor=ADMIN, rule_id="forms")


@pytest.mark.asyncio
async def test_add_rule_generates_ids(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    rule = await engine.add_rule(None, "allow", actor=ADMIN)
    assert rule.id.startswith("rule-")
    assert engine.get(rule.id) == rule


@pytest.mark.asyncio
async def test_update_appends_a_version_and_supersedes_the_old_one(
    audit_log: InMemoryAuditLog, clock: FakeClock
) -> None:
    engine = AdaptiveRuleEngine(audit_log, clock=clock)
    await engine.add_rule({"task_types": ["purchase"]}, "allow", 10, actor=ADMIN, rule_id="spend")
    clock.advance(minutes=1)
    updated = await engine.update_rule("spend", actor=ADMIN, threshold=25, expected_version=1)

    history = engine.history("spend")
    assert [r.version for r in history] == [1, 2]
    assert history[0].superseded is True
    assert history[0].threshold == Decimal("10")
    assert updated.threshold == Decimal("25")
    assert updated.superseded is False
    assert engine.list_current() == [updated]


@pytest.mark.asyncio
async def test_update_with_stale_version_conflicts(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    await engine.add_rule({}, "allow", 5, actor=ADMIN, rule_id="r")
    await engine.update_rule("r", actor=ADMIN, threshold=6, expected_version=1)
    with pytest.raises(RuleConflict):
        await engine.update_rule("r", actor=ADMIN, threshold=7, expected_version=1)
    assert engine.get("r").version == 2


@pytest.mark.asyncio
async def test_update_requires_a_change_and_an_existing_rule(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    await engine.add_rule({}, "allow", actor=ADMIN, rule_id="r")
    with pytest.raises(InvalidRequest):
        await engine.update_rule("r", actor=ADMIN)
    with pytest.raises(NotFound):
        await engine.update_rule("missing", actor=ADMIN, action="allow")
    with pytest.raises(NotFound):
        engine.history("missing")


@pytest.mark.asyncio
async def test_disabled_rules_do_not_match(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    await engine.add_rule({"task_types": ["scrape"]}, "require_approval", actor=ADMIN, rule_id="r")
    assert len(engine.evaluate("scrape", "x.com", Decimal("0"))) == 1

    disabled = await engine.disable_rule("r", actor=ADMIN)
    assert disabled.enabled is False
    assert engine.evaluate("scrape", "x.com", Decimal("0")) == []

    await engine.enable_rule("r", actor=ADMIN, expected_version=2)
    assert engine.get("r").version == 3
    actions = [e.action for e in await audit_log.query("system")]
    assert actions == ["rule.added", "rule.disabled", "rule.enabled"]


@pytest.mark.asyncio
async def test_threshold_semantics(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    await engine.add_rule({"task_types": ["purchase"]}, "allow", 50, actor=ADMIN, rule_id="a-limit")
    await engine.add_rule({"task_types": ["purchase"]}, "require_approval", actor=ADMIN, rule_id="b-always")
    await engine.add_rule({"task_types": ["purchase"]}, "allow", actor=ADMIN, rule_id="c-pass")
    await engine.add_rule({"task_types": ["purchase"]}, "require_approval", 50, actor=ADMIN, rule_id="d-review")

    small = engine.evaluate("purchase", "x.com", Decimal("5"))
    edge = engine.evaluate("purchase", "x.com", Decimal("50"))
    large = engine.evaluate("purchase", "x.com", Decimal("50.01"))

    assert [(m.rule.id, m.forces_approval) for m in small] == [
        ("a-limit", False),
        ("b-always", True),
        ("c-pass", False),
        ("d-review", True),
    ]
    assert [m.forces_approval for m in edge] == [False, True, False, True]
    assert [m.forces_approval for m in large] == [True, True, False, True]


@pytest.mark.asyncio
async def test_evaluate_is_deterministic(audit_log: InMemoryAuditLog) -> None:
    engine = AdaptiveRuleEngine(audit_log)
    for rid in ("z", "m", "a"):
        await engine.add_rule({}, "require_approval", actor=ADMIN, rule_id=rid)
    first = engine.evaluate("navigate", "x.com", Decimal("1"))
    second = engine.evaluate("navigate", "x.com", Decimal("1"))
    assert first == second
    assert [m.rule.id for m in first] == ["a", "m", "z"]


class _RuleAddFailsAuditLog(InMemoryAuditLog):
    async def append(self, **kwargs):  # type: ignore[no-untyped-def, override]
        if kwargs["action"] == "rule.added" and kwargs["target_id"] == "flaky":
            raise InternalError("audit append for system failed after 3 attempts")
        return await super().append(**kwargs)


@pytest.mark.asyncio
async def test_failed_add_leaves_no_rule_and_no_lock(clock: FakeClock) -> None:
    rules = AdaptiveRuleEngine(_RuleAddFailsAuditLog(clock=clock), clock=clock)
    await rules.add_rule({}, "allow", actor=ADMIN, rule_id="steady")

    with pytest.raises(InternalError):
        await rules.add_rule({}, "require_approval", actor=ADMIN, rule_id="flaky")

    assert [r.id for r in rules.list_current()] == ["steady"]
    assert set(rules._locks) == {"steady"}
