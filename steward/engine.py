"""Governance engine facade.

Wires sessions, tasks, approvals, rules, the cost ledger and the audit log
from :class:`StewardConfig`, and exposes one coroutine per operation. A
failed operation is recorded in the caller's audit chain as a ``rejected``
entry before the error reaches the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar

from sqlalchemy.ext.asyncio import AsyncEngine

from steward.config.models import RuleSeedConfig, StewardConfig
from steward.db import create_session_factory, engine_from_config
from steward.governance.approval_queue import ApprovalGate
from steward.governance.audit import AuditSink, ChainVerification, InMemoryAuditLog
from steward.governance.audit_store import AuditLog
from steward.governance.budget import BudgetCeilings
from steward.governance.errors import Forbidden, GovernanceError, InternalError, InvalidRequest
from steward.governance.ledger import CostLedger, CostLedgerProtocol
from steward.governance.ledger_inmemory import InMemoryCostLedger
from steward.governance.models import (
    AdaptiveRule,
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    AuditOutcome,
    CostRecord,
    Session,
    Task,
    TaskStatus,
    utcnow,
)
from steward.governance.reaper import ApprovalReaper
from steward.governance.rules import AdaptiveRuleEngine, parse_action, parse_condition
from steward.governance.sessions import SessionRegistry
from steward.governance.tasks import QueueStatus, TaskQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")

SEED_ACTOR = "system:config"


@dataclass(frozen=True)
class CostSnapshot:
    """Today's spend for one owner."""

    day: date
    daily_cost: Decimal
    ceiling: Decimal | None


def _parse_status(enum_cls: type, value: Any) -> Any:
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise InvalidRequest(f"unknown status: {value}") from exc


class GovernanceEngine:
    """Single entry point for every governance operation."""

    def __init__(
        self,
        config: StewardConfig | None = None,
        *,
        ledger: CostLedgerProtocol | None = None,
        audit_log: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self.config = config or StewardConfig()
        self._clock = clock
        self._db_engine = db_engine
        cfg = self.config

        self.ceilings = BudgetCeilings(cfg.budget.default_daily_ceiling, cfg.budget.owner_ceilings)
        if ledger is not None:
            ledger.ceilings = self.ceilings
        self.ledger: CostLedgerProtocol = ledger or InMemoryCostLedger(self.ceilings, clock=clock)
        self.audit: AuditSink = audit_log or InMemoryAuditLog(clock=clock)
        self.sessions = SessionRegistry(self.audit, clock=clock)
        self.rules = AdaptiveRuleEngine(self.audit, system_owner=cfg.audit.system_owner, clock=clock)
        self.approvals = ApprovalGate(
            self.audit,
            timeout_seconds=cfg.approval.timeout_seconds,
            escalation_timeout_seconds=cfg.approval.escalation_timeout_seconds,
            max_escalation_tier=cfg.approval.max_escalation_tier,
            denial_window=cfg.classifier.denial_window,
            clock=clock,
        )
        self.tasks = TaskQueue(self.sessions, self.ledger, self.rules, self.approvals, self.audit, clock=clock)
        self.reaper = ApprovalReaper(self.approvals, interval_seconds=cfg.approval.reaper_interval_seconds)
        self._started = False
        self._background: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, config: StewardConfig, *, clock: Callable[[], datetime] = utcnow) -> GovernanceEngine:
        """Build an engine; a database URL selects the SQL-backed ledger and audit log."""
        if not config.database.url:
            logger.info("no database configured, using in-memory ledger and audit log")
            return cls(config, clock=clock)
        db_engine = engine_from_config(config.database)
        factory = create_session_factory(db_engine)
        retry = config.retry
        ledger = CostLedger(
            factory,
            max_attempts=retry.max_attempts,
            backoff_base_seconds=retry.backoff_base_seconds,
            clock=clock,
        )
        audit_log = AuditLog(
            factory,
            max_attempts=retry.max_attempts,
            backoff_base_seconds=retry.backoff_base_seconds,
            clock=clock,
        )
        return cls(config, ledger=ledger, audit_log=audit_log, clock=clock, db_engine=db_engine)

    # ------------------------------------------------------------------ lifecycle

    async def start(self, *, run_reaper: bool = True) -> None:
        """Seed configured rules and start the expiry reaper."""
        if self._started:
            return
        for seed in self.config.rules:
            await self._apply_seed(seed, initial=True)
        if run_reaper:
            await self.reaper.start()
        self._started = True
        logger.info("governance engine started")

    async def stop(self) -> None:
        await self.reaper.stop()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._db_engine is not None:
            await self._db_engine.dispose()
        self._started = False
        logger.info("governance engine stopped")

    def apply_config(self, config: StewardConfig) -> None:
        """Apply hot-reloadable settings to the running engine."""
        self.ceilings.configure(config.budget.default_daily_ceiling, config.budget.owner_ceilings)
        self.approvals.configure(
            timeout_seconds=config.approval.timeout_seconds,
            escalation_timeout_seconds=config.approval.escalation_timeout_seconds,
            max_escalation_tier=config.approval.max_escalation_tier,
            denial_window=config.classifier.denial_window,
        )
        self.reaper.interval_seconds = config.approval.reaper_interval_seconds
        logging.getLogger("steward").setLevel(config.logging.level.upper())
        seeds_changed = config.rules != self.config.rules
        self.config = config
        if seeds_changed and self._started:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("rule seeds changed outside the event loop; restart to apply them")
                return
            task = loop.create_task(self.sync_seed_rules(config.rules))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def sync_seed_rules(self, seeds: list[RuleSeedConfig]) -> None:
        for seed in seeds:
            try:
                await self._apply_seed(seed, initial=False)
            except GovernanceError as exc:
                logger.warning("rule seed %s not applied: %s", seed.id, exc.message)

    async def _apply_seed(self, seed: RuleSeedConfig, *, initial: bool) -> None:
        existing = None
        if seed.id is not None:
            existing = next((r for r in self.rules.list_current() if r.id == seed.id), None)
        if existing is None:
            if seed.id is None and not initial:
                return
            await self.rules.add_rule(
                seed.condition,
                seed.action,
                seed.threshold,
                actor=SEED_ACTOR,
                rule_id=seed.id,
            )
            return
        threshold = None if seed.threshold is None else Decimal(str(seed.threshold))
        if (
            existing.condition != parse_condition(seed.condition)
            or existing.action != parse_action(seed.action)
            or existing.threshold != threshold
        ):
            await self.rules.update_rule(
                existing.id,
                actor=SEED_ACTOR,
                condition=seed.condition,
                action=seed.action,
                threshold=seed.threshold,
                clear_threshold=seed.threshold is None,
            )

    # ------------------------------------------------------------------ guards

    def is_reviewer(self, identity: str) -> bool:
        api = self.config.api
        return identity in api.reviewers or identity in api.reviewer_tiers

    def reviewer_tier(self, identity: str) -> int:
        return self.config.api.reviewer_tiers.get(identity, 0)

    def is_admin(self, identity: str) -> bool:
        return identity in self.config.api.admins

    async def _run(
        self,
        owner: str,
        operation: str,
        target_type: str,
        target_id: str | None,
        call: Callable[[], Awaitable[T]],
    ) -> T:
        if not isinstance(owner, str) or not owner.strip():
            raise InvalidRequest("owner must be a non-empty string")
        try:
            return await call()
        except GovernanceError as exc:
            await self.record_rejection(owner, operation, target_type, target_id, exc)
            raise
        except Exception as exc:
            logger.exception("%s failed unexpectedly for %s", operation, owner)
            error = InternalError(f"{operation} failed")
            await self.record_rejection(owner, operation, target_type, target_id, error)
            raise error from exc

    async def record_rejection(
        self,
        owner: str,
        operation: str,
        target_type: str,
        target_id: str | None,
        error: GovernanceError,
    ) -> None:
        """Append a ``rejected`` entry for a failed attempt; never raises."""
        logger.warning("%s rejected for %s: %s", operation, owner, error.message)
        try:
            await self.audit.append(
                owner=owner,
                actor=owner,
                action=f"{operation}.rejected",
                target_type=target_type,
                target_id=target_id or "-",
                payload={"error": error.code, "message": error.message},
                outcome=AuditOutcome.REJECTED,
            )
            error.audited = True
        except Exception:
            logger.exception("could not audit rejected %s for %s", operation, owner)

    def _require_reviewer(self, identity: str) -> None:
        if not self.is_reviewer(identity):
            raise Forbidden(f"{identity} is not a reviewer")

    def _require_admin(self, identity: str) -> None:
        if not self.is_admin(identity):
            raise Forbidden(f"{identity} is not an admin")

    # ------------------------------------------------------------------ sessions

    async def open_session(
        self,
        owner: str,
        domain: str,
        provider: str | None = None,
        metadata: dict[str, Any] | None = None,
        *,
        session_type: str | None = None,
        tags: list[str] | None = None,
    ) -> Session:
        return await self._run(
            owner,
            "session.open",
            "session",
            None,
            lambda: self.sessions.open(
                owner, domain, provider, metadata, session_type=session_type, tags=tags
            ),
        )

    async def get_session(self, owner: str, session_id: str) -> Session:
        return await self._run(owner, "session.get", "session", session_id, lambda: self.sessions.get(session_id, owner))

    async def list_sessions(self, owner: str, limit: int | None = None, offset: int = 0) -> list[Session]:
        return await self._run(
            owner, "session.list", "session", None, lambda: self.sessions.list(owner, limit, offset)
        )

    async def close_session(self, owner: str, session_id: str) -> Session:
        return await self._run(
            owner, "session.close", "session", session_id, lambda: self.sessions.close(session_id, owner)
        )

    # ------------------------------------------------------------------ tasks

    async def submit_task(
        self,
        owner: str,
        session_id: str,
        task_type: str,
        cost_estimate: Any = Decimal("0"),
        metadata: dict[str, Any] | None = None,
        priority: int = 5,
        depends_on: str | None = None,
    ) -> Task:
        return await self._run(
            owner,
            "task.submit",
            "session",
            session_id,
            lambda: self.tasks.submit(
                session_id, owner, task_type, cost_estimate, metadata, priority, depends_on=depends_on
            ),
        )

    async def get_task(self, owner: str, task_id: str) -> Task:
        return await self._run(owner, "task.get", "task", task_id, lambda: self.tasks.get(task_id, owner))

    async def list_tasks(self, owner: str, session_id: str, status: str | TaskStatus | None = None) -> list[Task]:
        async def _call() -> list[Task]:
            return await self.tasks.list(session_id, owner, _parse_status(TaskStatus, status))

        return await self._run(owner, "task.list", "session", session_id, _call)

    async def next_executable(self, owner: str, session_id: str) -> Task | None:
        return await self._run(
            owner, "task.next", "session", session_id, lambda: self.tasks.next_executable(session_id, owner)
        )

    async def queue_status(self, owner: str, session_id: str) -> QueueStatus:
        return await self._run(
            owner, "task.queue_status", "session", session_id, lambda: self.tasks.queue_status(session_id, owner)
        )

    async def start_task(self, owner: str, task_id: str) -> Task:
        return await self._run(owner, "task.start", "task", task_id, lambda: self.tasks.mark_executing(task_id, owner))

    async def complete_task(self, owner: str, task_id: str, actual_cost: Any) -> Task:
        return await self._run(
            owner,
            "task.complete",
            "task",
            task_id,
            lambda: self.tasks.mark_completed(task_id, owner, actual_cost),
        )

    async def fail_task(self, owner: str, task_id: str, reason: str) -> Task:
        return await self._run(
            owner, "task.fail", "task", task_id, lambda: self.tasks.mark_failed(task_id, owner, reason)
        )

    # ------------------------------------------------------------------ approvals

    async def list_approvals(
        self, identity: str, status: str | ApprovalStatus | None = None
    ) -> list[ApprovalRequest]:
        """Reviewers see every owner's requests; other callers only their own."""

        async def _call() -> list[ApprovalRequest]:
            scope = None if self.is_reviewer(identity) else identity
            return await self.approvals.list(scope, _parse_status(ApprovalStatus, status))

        return await self._run(identity, "approval.list", "approval", None, _call)

    async def get_approval(self, identity: str, approval_id: str) -> ApprovalRequest:
        async def _call() -> ApprovalRequest:
            scope = None if self.is_reviewer(identity) else identity
            return await self.approvals.get(approval_id, scope)

        return await self._run(identity, "approval.get", "approval", approval_id, _call)

    async def decide(
        self,
        reviewer: str,
        approval_id: str,
        decision: str,
        reason: str | None = None,
    ) -> ApprovalRequest:
        async def _call() -> ApprovalRequest:
            self._require_reviewer(reviewer)
            return await self.approvals.decide(
                approval_id, reviewer, decision, reason, reviewer_tier=self.reviewer_tier(reviewer)
            )

        return await self._run(reviewer, "approval.decide", "approval", approval_id, _call)

    async def expire_due(self) -> int:
        return await self.approvals.expire_due()

    # ------------------------------------------------------------------ rules

    async def add_rule(
        self,
        actor: str,
        condition: dict[str, Any] | None,
        action: str,
        threshold: Any = None,
        rule_id: str | None = None,
    ) -> AdaptiveRule:
        async def _call() -> AdaptiveRule:
            self._require_admin(actor)
            return await self.rules.add_rule(condition, action, threshold, actor=actor, rule_id=rule_id)

        return await self._run(actor, "rule.add", "rule", rule_id, _call)

    async def update_rule(
        self,
        actor: str,
        rule_id: str,
        *,
        condition: dict[str, Any] | None = None,
        action: str | None = None,
        threshold: Any = None,
        expected_version: int | None = None,
    ) -> AdaptiveRule:
        async def _call() -> AdaptiveRule:
            self._require_admin(actor)
            return await self.rules.update_rule(
                rule_id,
                actor=actor,
                condition=condition,
                action=action,
                threshold=threshold,
                expected_version=expected_version,
            )

        return await self._run(actor, "rule.update", "rule", rule_id, _call)

    async def disable_rule(self, actor: str, rule_id: str, expected_version: int | None = None) -> AdaptiveRule:
        async def _call() -> AdaptiveRule:
            self._require_admin(actor)
            return await self.rules.disable_rule(rule_id, actor=actor, expected_version=expected_version)

        return await self._run(actor, "rule.disable", "rule", rule_id, _call)

    async def enable_rule(self, actor: str, rule_id: str, expected_version: int | None = None) -> AdaptiveRule:
        async def _call() -> AdaptiveRule:
            self._require_admin(actor)
            return await self.rules.enable_rule(rule_id, actor=actor, expected_version=expected_version)

        return await self._run(actor, "rule.enable", "rule", rule_id, _call)

    async def list_rules(self, actor: str, rule_id: str | None = None) -> list[AdaptiveRule]:
        """Current version of every rule, or the full history of one."""

        async def _call() -> list[AdaptiveRule]:
            self._require_admin(actor)
            if rule_id is not None:
                return self.rules.history(rule_id)
            return self.rules.list_current()

        return await self._run(actor, "rule.list", "rule", rule_id, _call)

    # ------------------------------------------------------------------ cost & audit

    async def get_cost(self, owner: str) -> CostSnapshot:
        async def _call() -> CostSnapshot:
            return CostSnapshot(
                day=self.ledger.today(),
                daily_cost=await self.ledger.get_daily_cost(owner),
                ceiling=self.ceilings.ceiling_for(owner),
            )

        return await self._run(owner, "cost.get", "cost", None, _call)

    async def cost_history(self, owner: str, start_day: date, end_day: date) -> list[CostRecord]:
        async def _call() -> list[CostRecord]:
            if start_day > end_day:
                raise InvalidRequest("start_day must not be after end_day")
            return await self.ledger.history(owner, start_day, end_day)

        return await self._run(owner, "cost.history", "cost", None, _call)

    async def get_audit(
        self,
        owner: str,
        from_time: datetime | None = None,
        to_time: datetime | None = None,
    ) -> list[AuditEntry]:
        async def _call() -> list[AuditEntry]:
            if from_time is not None and to_time is not None and from_time > to_time:
                raise InvalidRequest("fromTime must not be after toTime")
            return await self.audit.query(owner, from_time, to_time)

        return await self._run(owner, "audit.get", "audit", None, _call)

    async def verify_audit(self, owner: str) -> ChainVerification:
        return await self._run(owner, "audit.verify", "audit", None, lambda: self.audit.verify(owner))
