"""Versioned adaptive rules consumed by the task classifier.

A change never rewrites a stored rule: it appends version N+1 and marks
version N superseded, so every past classification stays explainable by the
``rule_triggered`` reference it recorded.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from fnmatch import fnmatchcase
from typing import Any

from steward.governance.audit import AuditSink
from steward.governance.errors import InvalidRequest, NotFound, RuleConflict
from steward.governance.ledger import to_amount
from steward.governance.models import AdaptiveRule, RuleAction, RuleCondition, utcnow

logger = logging.getLogger(__name__)

_CONDITION_ALIASES = {
    "task_type": "task_types",
    "taskType": "task_types",
    "taskTypes": "task_types",
    "domain": "domains",
    "provider": "providers",
    "category": "categories",
    "activeHours": "active_hours",
    "minDenialRate": "min_denial_rate",
}
_CONDITION_FIELDS = {"task_types", "domains", "providers", "categories", "active_hours", "min_denial_rate"}


def _str_tuple(value: Any, name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list | tuple) or not all(isinstance(v, str) and v for v in value):
        raise InvalidRequest(f"condition.{name} must be a string or a list of strings")
    return tuple(value)


def parse_condition(data: dict[str, Any] | RuleCondition | None) -> RuleCondition:
    """Build a :class:`RuleCondition` from API or config input."""
    if isinstance(data, RuleCondition):
        return data
    raw = data or {}
    if not isinstance(raw, dict):
        raise InvalidRequest("condition must be an object")
    normalized: dict[str, Any] = {}
    for key, value in raw.items():
        name = _CONDITION_ALIASES.get(key, key)
        if name not in _CONDITION_FIELDS:
            raise InvalidRequest(f"unknown condition field: {key}")
        normalized[name] = value

    hours = normalized.get("active_hours")
    active_hours: tuple[int, int] | None = None
    if hours is not None:
        if (
            not isinstance(hours, list | tuple)
            or len(hours) != 2
            or not all(isinstance(h, int) and not isinstance(h, bool) for h in hours)
            or not (0 <= hours[0] <= 23 and 0 <= hours[1] <= 24)
        ):
            raise InvalidRequest("condition.active_hours must be [start_hour, end_hour] in UTC")
        active_hours = (hours[0], hours[1])

    rate = normalized.get("min_denial_rate")
    if rate is not None:
        if isinstance(rate, bool) or not isinstance(rate, int | float) or not 0.0 <= rate <= 1.0:
            raise InvalidRequest("condition.min_denial_rate must be between 0 and 1")
        rate = float(rate)

    return RuleCondition(
        task_types=_str_tuple(normalized.get("task_types"), "task_types"),
        domains=_str_tuple(normalized.get("domains"), "domains"),
        providers=_str_tuple(normalized.get("providers"), "providers"),
        categories=_str_tuple(normalized.get("categories"), "categories"),
        active_hours=active_hours,
        min_denial_rate=rate,
    )


def condition_to_dict(condition: RuleCondition) -> dict[str, Any]:
    return {
        "task_types": list(condition.task_types),
        "domains": list(condition.domains),
        "providers": list(condition.providers),
        "categories": list(condition.categories),
        "active_hours": list(condition.active_hours) if condition.active_hours else None,
        "min_denial_rate": condition.min_denial_rate,
    }


def parse_action(value: Any) -> RuleAction:
    aliases = {"requireApproval": RuleAction.REQUIRE_APPROVAL}
    if isinstance(value, RuleAction):
        return value
    if value in aliases:
        return aliases[value]
    try:
        return RuleAction(value)
    except ValueError as exc:
        raise InvalidRequest(f"unknown rule action: {value}") from exc


def _in_window(hour: int, window: tuple[int, int]) -> bool:
    start, end = window
    if start == end:
        return True
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end


@dataclass(frozen=True)
class EvaluationContext:
    """Submission facts a rule condition may test beyond type and domain."""

    provider: str | None = None
    category: str | None = None
    hour: int | None = None
    recent_denial_rate: float = 0.0


@dataclass(frozen=True)
class MatchedRule:
    """A rule whose condition matched, and whether it forces review."""

    rule: AdaptiveRule
    forces_approval: bool

    @property
    def ref(self) -> str:
        return self.rule.ref


def matches(condition: RuleCondition, task_type: str, domain: str, context: EvaluationContext) -> bool:
    if condition.task_types and task_type not in condition.task_types:
        return False
    if condition.domains and not any(fnmatchcase(domain.lower(), p.lower()) for p in condition.domains):
        return False
    if condition.providers and context.provider not in condition.providers:
        return False
    if condition.categories and context.category not in condition.categories:
        return False
    if condition.active_hours is not None:
        if context.hour is None or not _in_window(context.hour, condition.active_hours):
            return False
    if condition.min_denial_rate is not None and context.recent_denial_rate < condition.min_denial_rate:
        return False
    return True


def forces_approval(rule: AdaptiveRule, cost_estimate: Decimal) -> bool:
    """``require_approval`` always forces review; a threshold also forces it
    once the estimate exceeds the threshold, whatever the action."""
    if rule.action == RuleAction.REQUIRE_APPROVAL:
        return True
    return rule.threshold is not None and cost_estimate > rule.threshold


class AdaptiveRuleEngine:
    """Append-only rule history with per-rule locks."""

    def __init__(
        self,
        audit: AuditSink,
        *,
        system_owner: str = "system",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit
        self.system_owner = system_owner
        self._clock = clock
        self._versions: dict[str, list[AdaptiveRule]] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, rule_id: str) -> asyncio.Lock:
        return self._locks.setdefault(rule_id, asyncio.Lock())

    async def add_rule(
        self,
        condition: dict[str, Any] | RuleCondition | None,
        action: str | RuleAction,
        threshold: Any = None,
        *,
        actor: str,
        rule_id: str | None = None,
    ) -> AdaptiveRule:
        parsed_condition = parse_condition(condition)
        parsed_action = parse_action(action)
        parsed_threshold = None if threshold is None else to_amount(threshold, "threshold")
        if rule_id is not None and (not isinstance(rule_id, str) or not rule_id.strip()):
            raise InvalidRequest("rule id must be a non-empty string")
        rid = rule_id.strip() if rule_id else f"rule-{uuid.uuid4().hex[:12]}"

        async with self._lock(rid):
            if rid in self._versions:
                raise RuleConflict(f"rule already exists: {rid}")
            rule = AdaptiveRule(
                id=rid,
                version=1,
                condition=parsed_condition,
                action=parsed_action,
                threshold=parsed_threshold,
                enabled=True,
                created_at=self._clock(),
                created_by=actor,
            )
            try:
                await self._record(rule, actor, "rule.added")
            except Exception:
                # Nothing was created under this id.
                self._locks.pop(rid, None)
                raise
            self._versions[rid] = [rule]
        logger.info("rule added %s by %s", rule.ref, actor)
        return rule

    async def update_rule(
        self,
        rule_id: str,
        *,
        actor: str,
        condition: dict[str, Any] | RuleCondition | None = None,
        action: str | RuleAction | None = None,
        threshold: Any = None,
        clear_threshold: bool = False,
        expected_version: int | None = None,
    ) -> AdaptiveRule:
        changes: dict[str, Any] = {}
        if condition is not None:
            changes["condition"] = parse_condition(condition)
        if action is not None:
            changes["action"] = parse_action(action)
        if threshold is not None:
            changes["threshold"] = to_amount(threshold, "threshold")
        elif clear_threshold:
            changes["threshold"] = None
        if not changes:
            raise InvalidRequest("update_rule requires condition, action or threshold")
        return await self._append_version(rule_id, actor, "rule.updated", changes, expected_version)

    async def disable_rule(self, rule_id: str, *, actor: str, expected_version: int | None = None) -> AdaptiveRule:
        return await self._append_version(rule_id, actor, "rule.disabled", {"enabled": False}, expected_version)

    async def enable_rule(self, rule_id: str, *, actor: str, expected_version: int | None = None) -> AdaptiveRule:
        return await self._append_version(rule_id, actor, "rule.enabled", {"enabled": True}, expected_version)

    async def _append_version(
        self,
        rule_id: str,
        actor: str,
        action: str,
        changes: dict[str, Any],
        expected_version: int | None,
    ) -> AdaptiveRule:
        if rule_id not in self._versions:
            raise NotFound("rule", rule_id)
        async with self._lock(rule_id):
            history = self._versions[rule_id]
            current = history[-1]
            if expected_version is not None and expected_version != current.version:
                raise RuleConflict(
                    f"rule {rule_id} is at version {current.version}, expected {expected_version}"
                )
            rule = replace(
                current,
                version=current.version + 1,
                created_at=self._clock(),
                created_by=actor,
                superseded=False,
                **changes,
            )
            await self._record(rule, actor, action)
            history[-1] = replace(current, superseded=True)
            history.append(rule)
        logger.info("%s %s by %s", action, rule.ref, actor)
        return rule

    async def _record(self, rule: AdaptiveRule, actor: str, action: str) -> None:
        await self._audit.append(
            owner=self.system_owner,
            actor=actor,
            action=action,
            target_type="rule",
            target_id=rule.id,
            payload={
                "version": rule.version,
                "condition": condition_to_dict(rule.condition),
                "action": rule.action.value,
                "threshold": rule.threshold,
                "enabled": rule.enabled,
            },
        )

    def get(self, rule_id: str) -> AdaptiveRule:
        history = self._versions.get(rule_id)
        if not history:
            raise NotFound("rule", rule_id)
        return history[-1]

    def history(self, rule_id: str) -> list[AdaptiveRule]:
        if rule_id not in self._versions:
            raise NotFound("rule", rule_id)
        return list(self._versions[rule_id])

    def list_current(self) -> list[AdaptiveRule]:
        return [self._versions[rid][-1] for rid in sorted(self._versions)]

    def evaluate(
        self,
        task_type: str,
        domain: str,
        cost_estimate: Decimal,
        context: EvaluationContext | None = None,
    ) -> list[MatchedRule]:
        """Match current enabled versions, ordered by rule id.

        Reads only the rule set and the arguments, so identical inputs give
        identical results.
        """
        ctx = context or EvaluationContext()
        matched: list[MatchedRule] = []
        for rule in self.list_current():
            if not rule.enabled or not matches(rule.condition, task_type, domain, ctx):
                continue
            matched.append(MatchedRule(rule=rule, forces_approval=forces_approval(rule, cost_estimate)))
        return matched
