"""Task queue: admission, classification and execution lifecycle of tasks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any

from steward.governance.approval_queue import CLASSIFIER_ACTOR, EXPIRY_ACTOR, ApprovalGate
from steward.governance.audit import AuditSink
from steward.governance.classifier import TaskClassifier
from steward.governance.errors import InvalidRequest, NotApproved, NotFound, SessionClosed
from steward.governance.ledger import CostLedgerProtocol, to_amount
from steward.governance.models import (
    TERMINAL_TASK_STATUSES,
    ApprovalRequest,
    ApprovalStatus,
    Task,
    TaskStatus,
    utcnow,
)
from steward.governance.payloads import parse_task_payload
from steward.governance.rules import AdaptiveRuleEngine
from steward.governance.sessions import SessionRegistry

logger = logging.getLogger(__name__)

MIN_PRIORITY = 1
MAX_PRIORITY = 10


def _priority(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not MIN_PRIORITY <= value <= MAX_PRIORITY:
        raise InvalidRequest(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}")
    return value


@dataclass(frozen=True)
class QueueStatus:
    """Per-status task counts for one session.

    ``blocked`` counts approved tasks still waiting on an unfinished dependency.
    """

    session_id: str
    total_tasks: int
    pending: int
    approved: int
    blocked: int
    executing: int
    completed: int
    failed: int
    denied: int


class TaskQueue:
    """In-process task store.

    Lock order is session, then task. Approval resolution enters with the
    approval lock held and takes only the task lock. A task's lock is dropped
    once the task is terminal.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        ledger: CostLedgerProtocol,
        rules: AdaptiveRuleEngine,
        approvals: ApprovalGate,
        audit: AuditSink,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._sessions = sessions
        self._ledger = ledger
        self._approvals = approvals
        self._audit = audit
        self._clock = clock
        self._classifier = TaskClassifier(ledger, rules)
        self._tasks: dict[str, Task] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        approvals.on_resolved = self.apply_resolution

    def _lock(self, task_id: str) -> asyncio.Lock:
        return self._locks.setdefault(task_id, asyncio.Lock())

    def _store(self, task: Task) -> None:
        self._tasks[task.id] = task
        if task.status in TERMINAL_TASK_STATUSES:
            self._locks.pop(task.id, None)

    def _lookup(self, task_id: str, owner: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None or task.owner != owner:
            raise NotFound("task", task_id)
        return task

    def _live(self, task_id: str, owner: str, expected: TaskStatus) -> Task:
        """Look up a task that must be in ``expected``; terminal tasks fail without locking."""
        task = self._lookup(task_id, owner)
        if task.status != expected and task.status in TERMINAL_TASK_STATUSES:
            raise NotApproved(task_id, task.status.value)
        return task

    def _dependency(self, depends_on: str | None, session_id: str, owner: str) -> str | None:
        if depends_on is None:
            return None
        if not isinstance(depends_on, str) or not depends_on.strip():
            raise InvalidRequest("depends_on must be a non-empty task id")
        dependency = self._lookup(depends_on.strip(), owner)
        if dependency.session_id != session_id:
            raise InvalidRequest(f"task {dependency.id} belongs to another session")
        return dependency.id

    def _waiting_on(self, task: Task) -> str | None:
        """Id of the unfinished task ``task`` depends on, if any."""
        if task.depends_on is None:
            return None
        dependency = self._tasks.get(task.depends_on)
        if dependency is not None and dependency.status == TaskStatus.COMPLETED:
            return None
        return task.depends_on

    async def _abandon(self, task: Task) -> None:
        """Deny a held-back task whose approval request could not be created."""
        denied = replace(
            task,
            status=TaskStatus.DENIED,
            updated_at=self._clock(),
            failure_reason="approval request not created",
        )
        try:
            await self._audit.append(
                owner=task.owner,
                actor=CLASSIFIER_ACTOR,
                action="task.denied",
                target_type="task",
                target_id=task.id,
                payload={"approval_id": task.approval_id, "reason": denied.failure_reason},
            )
        except Exception:
            logger.exception("could not record denial of task %s", task.id)
            return
        self._store(denied)
        logger.warning("task %s denied: approval request %s not created", task.id, task.approval_id)

    async def submit(
        self,
        session_id: str,
        owner: str,
        task_type: str,
        cost_estimate: Any = Decimal("0"),
        metadata: dict[str, Any] | None = None,
        priority: int = 5,
        depends_on: str | None = None,
    ) -> Task:
        """Admit a task into an active session and classify it.

        A held-back task is published only once its approval request exists;
        if the request cannot be created the task is denied instead.
        """
        if not isinstance(task_type, str) or not task_type.strip():
            raise InvalidRequest("task_type must be a non-empty string")
        task_type = task_type.strip()
        estimate = to_amount(cost_estimate, "cost_estimate")
        rank = _priority(priority)
        payload = parse_task_payload(task_type, metadata)

        async with self._sessions.hold(session_id, owner) as session:
            if not session.is_active:
                raise SessionClosed(session_id)
            dependency = self._dependency(depends_on, session_id, owner)
            now = self._clock()
            verdict = await self._classifier.classify(
                session=session,
                task_type=task_type,
                cost_estimate=estimate,
                payload=payload,
                now=now,
                recent_denial_rate=self._approvals.recent_denial_rate(owner),
            )
            approval_id = str(uuid.uuid4()) if verdict.requires_approval else None
            task = Task(
                id=str(uuid.uuid4()),
                session_id=session_id,
                owner=owner,
                task_type=task_type,
                status=TaskStatus.PENDING if verdict.requires_approval else TaskStatus.APPROVED,
                cost_estimate=estimate,
                payload=payload,
                created_at=now,
                updated_at=now,
                metadata=dict(metadata or {}),
                priority=rank,
                requires_approval=verdict.requires_approval,
                approval_id=approval_id,
                rule_triggered=verdict.rule_triggered,
                depends_on=dependency,
            )
            await self._audit.append(
                owner=owner,
                actor=owner,
                action="task.submitted",
                target_type="task",
                target_id=task.id,
                payload={
                    "session_id": session_id,
                    "task_type": task_type,
                    "category": payload.category,
                    "cost_estimate": estimate,
                    "priority": rank,
                    "status": task.status.value,
                    "approval_id": approval_id,
                    "depends_on": dependency,
                    **verdict.as_audit_payload(),
                },
            )
            if verdict.requires_approval:
                try:
                    await self._approvals.create(task, verdict.rule_triggered or "", approval_id=approval_id)
                except Exception:
                    await self._abandon(task)
                    raise
            self._store(task)

        logger.info(
            "task submitted id=%s type=%s status=%s rule=%s",
            task.id,
            task_type,
            task.status.value,
            task.rule_triggered,
        )
        return task

    async def apply_resolution(self, request: ApprovalRequest) -> None:
        """Flip the blocked task once its approval request is resolved."""
        task = self._tasks.get(request.task_id)
        if task is None or task.status != TaskStatus.PENDING:
            logger.warning("approval %s resolved for task %s which is not pending", request.id, request.task_id)
            return
        async with self._lock(request.task_id):
            task = self._tasks[request.task_id]
            if task.status != TaskStatus.PENDING:
                logger.warning("approval %s resolved for task %s which is not pending", request.id, task.id)
                return
            if request.status == ApprovalStatus.APPROVED:
                updated = replace(task, status=TaskStatus.APPROVED, updated_at=self._clock())
            else:
                updated = replace(
                    task,
                    status=TaskStatus.DENIED,
                    updated_at=self._clock(),
                    failure_reason=f"approval {request.status.value}",
                )
            await self._audit.append(
                owner=task.owner,
                actor=request.decided_by or EXPIRY_ACTOR,
                action=f"task.{updated.status.value}",
                target_type="task",
                target_id=task.id,
                payload={"approval_id": request.id, "approval_status": request.status.value},
            )
            self._store(updated)
        logger.info("task %s %s by approval %s", task.id, updated.status.value, request.id)

    async def mark_executing(self, task_id: str, owner: str) -> Task:
        task = self._live(task_id, owner, TaskStatus.APPROVED)
        async with self._sessions.hold(task.session_id, owner) as session:
            async with self._lock(task_id):
                task = self._lookup(task_id, owner)
                if not session.is_active:
                    raise SessionClosed(session.id)
                if task.status != TaskStatus.APPROVED:
                    raise NotApproved(task_id, task.status.value)
                if task.requires_approval:
                    approval = self._approvals.peek(task.approval_id or "")
                    if approval is None or approval.status != ApprovalStatus.APPROVED:
                        raise NotApproved(task_id, "awaiting approval")
                waiting_on = self._waiting_on(task)
                if waiting_on is not None:
                    raise NotApproved(task_id, f"waiting on task {waiting_on}")
                updated = replace(task, status=TaskStatus.EXECUTING, updated_at=self._clock())
                await self._audit.append(
                    owner=owner,
                    actor=owner,
                    action="task.executing",
                    target_type="task",
                    target_id=task_id,
                    payload={"session_id": session.id, "provider": session.provider},
                )
                self._store(updated)
        logger.info("task executing id=%s", task_id)
        return updated

    async def mark_completed(self, task_id: str, owner: str, actual_cost: Any) -> Task:
        """Finish a task and post its actual cost to the ledger."""
        actual = to_amount(actual_cost, "actual_cost")
        self._live(task_id, owner, TaskStatus.EXECUTING)
        async with self._lock(task_id):
            task = self._lookup(task_id, owner)
            if task.status != TaskStatus.EXECUTING:
                raise NotApproved(task_id, task.status.value)
            daily_total = await self._ledger.post(owner, actual, reference=task_id)
            drift = actual - task.cost_estimate
            if drift != 0:
                logger.warning(
                    "cost drift on task %s: estimate=%s actual=%s drift=%s",
                    task_id,
                    task.cost_estimate,
                    actual,
                    drift,
                )
            updated = replace(
                task,
                status=TaskStatus.COMPLETED,
                actual_cost=actual,
                updated_at=self._clock(),
            )
            await self._audit.append(
                owner=owner,
                actor=owner,
                action="task.completed",
                target_type="task",
                target_id=task_id,
                payload={
                    "cost_estimate": task.cost_estimate,
                    "actual_cost": actual,
                    "drift": drift,
                    "daily_total": daily_total,
                },
            )
            self._store(updated)
        logger.info("task completed id=%s actual_cost=%s", task_id, actual)
        return updated

    async def mark_failed(self, task_id: str, owner: str, reason: str) -> Task:
        if not isinstance(reason, str) or not reason.strip():
            raise InvalidRequest("reason must be a non-empty string")
        self._live(task_id, owner, TaskStatus.EXECUTING)
        async with self._lock(task_id):
            task = self._lookup(task_id, owner)
            if task.status != TaskStatus.EXECUTING:
                raise NotApproved(task_id, task.status.value)
            updated = replace(
                task,
                status=TaskStatus.FAILED,
                failure_reason=reason.strip(),
                updated_at=self._clock(),
            )
            await self._audit.append(
                owner=owner,
                actor=owner,
                action="task.failed",
                target_type="task",
                target_id=task_id,
                payload={"reason": updated.failure_reason},
            )
            self._store(updated)
        logger.info("task failed id=%s reason=%s", task_id, updated.failure_reason)
        return updated

    async def get(self, task_id: str, owner: str) -> Task:
        return self._lookup(task_id, owner)

    async def list(self, session_id: str, owner: str, status: TaskStatus | None = None) -> list[Task]:
        await self._sessions.get(session_id, owner)
        rows = [row for row in self._tasks.values() if row.session_id == session_id]
        if status is not None:
            rows = [row for row in rows if row.status == status]
        rows.sort(key=lambda row: row.created_at)
        return rows

    async def next_executable(self, session_id: str, owner: str) -> Task | None:
        """Most urgent approved task of the session whose dependency is done, oldest first on ties."""
        approved = await self.list(session_id, owner, TaskStatus.APPROVED)
        rows = [row for row in approved if self._waiting_on(row) is None]
        if not rows:
            return None
        return min(rows, key=lambda row: (row.priority, row.created_at))

    async def queue_status(self, session_id: str, owner: str) -> QueueStatus:
        rows = await self.list(session_id, owner)
        counts = {status: 0 for status in TaskStatus}
        for row in rows:
            counts[row.status] += 1
        blocked = sum(1 for row in rows if row.status == TaskStatus.APPROVED and self._waiting_on(row) is not None)
        return QueueStatus(
            session_id=session_id,
            total_tasks=len(rows),
            pending=counts[TaskStatus.PENDING],
            approved=counts[TaskStatus.APPROVED],
            blocked=blocked,
            executing=counts[TaskStatus.EXECUTING],
            completed=counts[TaskStatus.COMPLETED],
            failed=counts[TaskStatus.FAILED],
            denied=counts[TaskStatus.DENIED],
        )
