"""Immutable governance entities.

State transitions never mutate a stored value: the owning store builds the
next value with :func:`dataclasses.replace`, audits it, then swaps it in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from steward.governance.payloads import TaskPayload


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Session lifecycle states."""

    ACTIVE = "active"
    CLOSED = "closed"


class SessionType(str, Enum):
    """Kind of agent work a session hosts."""

    TRADING = "trading"
    BLOG = "blog"
    SEO = "seo"
    SOCIAL = "social"
    FORM = "form"
    VISUAL = "visual"
    GENERAL = "general"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_TASK_STATUSES = frozenset({TaskStatus.DENIED, TaskStatus.COMPLETED, TaskStatus.FAILED})


class ApprovalStatus(str, Enum):
    """Approval request lifecycle states."""

    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    ESCALATED = "escalated"
    EXPIRED = "expired"


OPEN_APPROVAL_STATUSES = frozenset({ApprovalStatus.PENDING, ApprovalStatus.ESCALATED})


class Decision(str, Enum):
    """Reviewer decision on an approval request."""

    APPROVE = "approve"
    DENY = "deny"
    ESCALATE = "escalate"


class RuleAction(str, Enum):
    """What a matched adaptive rule does to a task."""

    REQUIRE_APPROVAL = "require_approval"
    ALLOW = "allow"


class AuditOutcome(str, Enum):
    """Whether an audit entry records a committed transition or a rejected attempt."""

    COMMITTED = "committed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Session:
    """Bounded lifetime of agent-provider interaction under one owner."""

    id: str
    owner: str
    domain: str
    provider: str
    status: SessionStatus
    started_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    session_type: SessionType = SessionType.GENERAL
    tags: tuple[str, ...] = ()
    ended_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


@dataclass(frozen=True)
class Task:
    """A discrete unit of agent-requested work scoped to a session."""

    id: str
    session_id: str
    owner: str
    task_type: str
    status: TaskStatus
    cost_estimate: Decimal
    payload: TaskPayload
    created_at: datetime
    updated_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    requires_approval: bool = False
    approval_id: str | None = None
    rule_triggered: str | None = None
    actual_cost: Decimal | None = None
    failure_reason: str | None = None
    depends_on: str | None = None


@dataclass(frozen=True)
class ApprovalRequest:
    """Human-review decision blocking one risky task."""

    id: str
    task_id: str
    owner: str
    status: ApprovalStatus
    rule_triggered: str
    created_at: datetime
    expires_at: datetime
    tier: int = 0
    decided_by: str | None = None
    decided_at: datetime | None = None
    reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPROVAL_STATUSES


@dataclass(frozen=True)
class RuleCondition:
    """Predicate over a task submission; empty collections match anything."""

    task_types: tuple[str, ...] = ()
    domains: tuple[str, ...] = ()
    providers: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    active_hours: tuple[int, int] | None = None
    min_denial_rate: float | None = None


@dataclass(frozen=True)
class AdaptiveRule:
    """One version of a policy rule consumed by the classifier."""

    id: str
    version: int
    condition: RuleCondition
    action: RuleAction
    threshold: Decimal | None
    enabled: bool
    created_at: datetime
    created_by: str
    superseded: bool = False

    @property
    def ref(self) -> str:
        return f"{self.id}@v{self.version}"


@dataclass(frozen=True)
class AuditEntry:
    """One link of an owner's hash-chained audit trail."""

    id: str
    owner: str
    sequence: int
    actor: str
    action: str
    target_type: str
    target_id: str
    timestamp: datetime
    payload: dict[str, Any]
    payload_hash: str
    prev_hash: str
    entry_hash: str
    outcome: AuditOutcome = AuditOutcome.COMMITTED


@dataclass(frozen=True)
class CostRecord:
    """Per-owner, per-UTC-day spend aggregate."""

    owner: str
    day: date
    total_cost: Decimal
