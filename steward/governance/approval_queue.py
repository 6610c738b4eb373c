"""Approval gate: human-review decisions that block risky tasks.

Decisions and expiry for one request serialize on that request's lock, so
resolution is exactly-once. Expiry is fail-closed: an undecided request
resolves to ``expired`` and its task to ``denied``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta

from steward.governance.audit import AuditSink
from steward.governance.errors import AlreadyResolved, Forbidden, InvalidRequest, NotFound
from steward.governance.models import (
    ApprovalRequest,
    ApprovalStatus,
    Decision,
    Task,
    utcnow,
)

logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:expiry"
CLASSIFIER_ACTOR = "system:classifier"

ResolutionHook = Callable[[ApprovalRequest], Awaitable[None]]


class ApprovalGate:
    """In-process approval store for tasks the classifier held back."""

    def __init__(
        self,
        audit: AuditSink,
        *,
        timeout_seconds: int = 3600,
        escalation_timeout_seconds: int = 900,
        max_escalation_tier: int = 2,
        denial_window: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._audit = audit
        self._clock = clock
        self._items: dict[str, ApprovalRequest] = {}
        self._by_task: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._recent: dict[str, deque[bool]] = {}
        self.on_resolved: ResolutionHook | None = None
        self.configure(
            timeout_seconds=timeout_seconds,
            escalation_timeout_seconds=escalation_timeout_seconds,
            max_escalation_tier=max_escalation_tier,
            denial_window=denial_window,
        )

    def configure(
        self,
        *,
        timeout_seconds: int,
        escalation_timeout_seconds: int,
        max_escalation_tier: int,
        denial_window: int,
    ) -> None:
        """Apply new deadlines; requests already created keep theirs."""
        if timeout_seconds <= 0 or escalation_timeout_seconds <= 0:
            raise ValueError("approval timeouts must be positive")
        if max_escalation_tier < 0:
            raise ValueError("max_escalation_tier must be >= 0")
        if denial_window <= 0:
            raise ValueError("denial_window must be positive")
        self._timeout = timedelta(seconds=timeout_seconds)
        self._escalation_timeout = timedelta(seconds=escalation_timeout_seconds)
        self._max_tier = max_escalation_tier
        self._denial_window = denial_window
        self._recent = {owner: deque(rows, maxlen=denial_window) for owner, rows in self._recent.items()}

    def _lock(self, approval_id: str) -> asyncio.Lock:
        return self._locks.setdefault(approval_id, asyncio.Lock())

    async def create(
        self,
        task: Task,
        rule_triggered: str,
        *,
        approval_id: str | None = None,
    ) -> ApprovalRequest:
        existing = self._by_task.get(task.id)
        if existing is not None and self._items[existing].is_open:
            raise InvalidRequest(f"task {task.id} already has an open approval request")
        now = self._clock()
        request = ApprovalRequest(
            id=approval_id or str(uuid.uuid4()),
            task_id=task.id,
            owner=task.owner,
            status=ApprovalStatus.PENDING,
            rule_triggered=rule_triggered,
            created_at=now,
            expires_at=now + self._timeout,
        )
        await self._audit.append(
            owner=task.owner,
            actor=CLASSIFIER_ACTOR,
            action="approval.requested",
            target_type="approval",
            target_id=request.id,
            payload={
                "task_id": task.id,
                "rule_triggered": rule_triggered,
                "tier": request.tier,
                "expires_at": request.expires_at,
            },
        )
        self._items[request.id] = request
        self._by_task[task.id] = request.id
        logger.info("approval requested id=%s task=%s rule=%s", request.id, task.id, rule_triggered)
        return request

    async def decide(
        self,
        approval_id: str,
        reviewer: str,
        decision: str | Decision,
        reason: str | None = None,
        *,
        reviewer_tier: int = 0,
    ) -> ApprovalRequest:
        """Resolve or escalate a request; only the first decision wins.

        ``reviewer_tier`` must reach the request's current tier, so an
        escalated request can only be decided from the tier it was sent to.
        """
        try:
            verdict = Decision(decision)
        except ValueError as exc:
            raise InvalidRequest(f"unknown decision: {decision}") from exc
        if not isinstance(reviewer, str) or not reviewer.strip():
            raise InvalidRequest("reviewer must be a non-empty string")
        if reason is not None and not isinstance(reason, str):
            raise InvalidRequest("reason must be a string")
        if approval_id not in self._items:
            raise NotFound("approval", approval_id)
        if not self._items[approval_id].is_open:
            raise AlreadyResolved(approval_id, self._items[approval_id].status.value)

        async with self._lock(approval_id):
            request = self._items[approval_id]
            if not request.is_open:
                raise AlreadyResolved(approval_id, request.status.value)
            now = self._clock()
            if now >= request.expires_at:
                await self._expire_locked(request, now)
                raise AlreadyResolved(approval_id, ApprovalStatus.EXPIRED.value)
            if reviewer_tier < request.tier:
                raise Forbidden(f"{reviewer} cannot decide approval request {approval_id} at tier {request.tier}")

            if verdict == Decision.ESCALATE:
                if request.tier >= self._max_tier:
                    raise InvalidRequest(f"approval request {approval_id} is already at the highest tier")
                updated = replace(
                    request,
                    status=ApprovalStatus.ESCALATED,
                    tier=request.tier + 1,
                    expires_at=now + self._escalation_timeout,
                    reason=reason,
                )
                action = "approval.escalated"
            else:
                status = ApprovalStatus.APPROVED if verdict == Decision.APPROVE else ApprovalStatus.DENIED
                updated = replace(
                    request,
                    status=status,
                    decided_by=reviewer,
                    decided_at=now,
                    reason=reason,
                )
                action = f"approval.{status.value}"

            await self._audit.append(
                owner=request.owner,
                actor=reviewer,
                action=action,
                target_type="approval",
                target_id=approval_id,
                payload={
                    "task_id": request.task_id,
                    "decision": verdict.value,
                    "tier": updated.tier,
                    "reason": reason,
                    "expires_at": updated.expires_at,
                },
            )
            self._items[approval_id] = updated
            logger.info("%s id=%s reviewer=%s", action, approval_id, reviewer)
            if not updated.is_open:
                await self._resolved(updated)
        return updated

    async def expire(self, approval_id: str) -> ApprovalRequest:
        """Expire an open request now; the task is denied."""
        if approval_id not in self._items:
            raise NotFound("approval", approval_id)
        if not self._items[approval_id].is_open:
            raise AlreadyResolved(approval_id, self._items[approval_id].status.value)
        async with self._lock(approval_id):
            request = self._items[approval_id]
            if not request.is_open:
                raise AlreadyResolved(approval_id, request.status.value)
            return await self._expire_locked(request, self._clock())

    async def expire_due(self) -> int:
        """Expire every open request whose deadline has passed."""
        now = self._clock()
        due = [row.id for row in self._items.values() if row.is_open and row.expires_at <= now]
        count = 0
        for approval_id in due:
            if not self._items[approval_id].is_open:
                continue
            async with self._lock(approval_id):
                request = self._items[approval_id]
                # A decision may have landed while we waited for the lock.
                if not request.is_open or request.expires_at > self._clock():
                    continue
                await self._expire_locked(request, self._clock())
                count += 1
        if count:
            logger.info("expired %d overdue approval request(s)", count)
        return count

    async def _expire_locked(self, request: ApprovalRequest, now: datetime) -> ApprovalRequest:
        updated = replace(
            request,
            status=ApprovalStatus.EXPIRED,
            decided_by=EXPIRY_ACTOR,
            decided_at=now,
        )
        await self._audit.append(
            owner=request.owner,
            actor=EXPIRY_ACTOR,
            action="approval.expired",
            target_type="approval",
            target_id=request.id,
            payload={"task_id": request.task_id, "expires_at": request.expires_at, "tier": request.tier},
        )
        self._items[request.id] = updated
        logger.warning("approval expired id=%s task=%s", request.id, request.task_id)
        await self._resolved(updated)
        return updated

    async def _resolved(self, request: ApprovalRequest) -> None:
        # Resolution is final; later callers fail before taking a lock.
        self._locks.pop(request.id, None)
        window = self._recent.setdefault(request.owner, deque(maxlen=self._denial_window))
        window.append(request.status != ApprovalStatus.APPROVED)
        if self.on_resolved is not None:
            await self.on_resolved(request)

    def recent_denial_rate(self, owner: str) -> float:
        """Share of the owner's most recent resolutions that were denied or expired."""
        window = self._recent.get(owner)
        if not window:
            return 0.0
        return sum(window) / len(window)

    def peek(self, approval_id: str) -> ApprovalRequest | None:
        return self._items.get(approval_id)

    async def get(self, approval_id: str, owner: str | None = None) -> ApprovalRequest:
        """Fetch a request; ``owner=None`` skips the ownership check (reviewers)."""
        request = self._items.get(approval_id)
        if request is None or (owner is not None and request.owner != owner):
            raise NotFound("approval", approval_id)
        return request

    async def list(
        self,
        owner: str | None = None,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]:
        rows = [row for row in self._items.values() if owner is None or row.owner == owner]
        if status is not None:
            rows = [row for row in rows if row.status == status]
        rows.sort(key=lambda row: row.created_at)
        return rows
