"""Task classifier: decides whether a submitted task needs human review."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from steward.governance.budget import ReservationResult
from steward.governance.errors import BudgetExceeded
from steward.governance.ledger import CostLedgerProtocol
from steward.governance.models import Session
from steward.governance.payloads import TaskPayload
from steward.governance.rules import AdaptiveRuleEngine, EvaluationContext, MatchedRule

logger = logging.getLogger(__name__)

BUDGET_CEILING = "budget_ceiling"


@dataclass(frozen=True)
class Classification:
    """Classifier verdict for one submission."""

    requires_approval: bool
    rule_triggered: str | None
    reservation: ReservationResult
    matched: tuple[MatchedRule, ...] = field(default_factory=tuple)

    def as_audit_payload(self) -> dict[str, object]:
        return {
            "requires_approval": self.requires_approval,
            "rule_triggered": self.rule_triggered,
            "daily_cost": self.reservation.current,
            "ceiling": self.reservation.ceiling,
            "matched_rules": [m.ref for m in self.matched],
        }


class TaskClassifier:
    """First match wins: the daily ceiling, then adaptive rules, else auto-clear."""

    def __init__(self, ledger: CostLedgerProtocol, rules: AdaptiveRuleEngine) -> None:
        self._ledger = ledger
        self._rules = rules

    async def classify(
        self,
        *,
        session: Session,
        task_type: str,
        cost_estimate: Decimal,
        payload: TaskPayload,
        now: datetime,
        recent_denial_rate: float = 0.0,
    ) -> Classification:
        reservation = await self._ledger.reserve(session.owner, cost_estimate)
        context = EvaluationContext(
            provider=session.provider,
            category=payload.category,
            hour=now.hour,
            recent_denial_rate=recent_denial_rate,
        )
        matched = tuple(self._rules.evaluate(task_type, session.domain, cost_estimate, context))

        try:
            reservation.raise_for_ceiling()
        except BudgetExceeded as exc:
            logger.info("approval forced for %s: %s", session.owner, exc.message)
            return Classification(True, BUDGET_CEILING, reservation, matched)
        for match in matched:
            if match.forces_approval:
                return Classification(True, match.ref, reservation, matched)
        return Classification(False, None, reservation, matched)
