"""Governance layer: sessions, tasks, approvals, rules, cost ledger, audit log."""

from steward.governance.approval_queue import ApprovalGate
from steward.governance.audit import AuditSink, ChainVerification, InMemoryAuditLog
from steward.governance.audit_store import AuditLog
from steward.governance.budget import BudgetCeilings, ReservationResult
from steward.governance.classifier import BUDGET_CEILING, Classification, TaskClassifier
from steward.governance.errors import (
    AlreadyResolved,
    BudgetExceeded,
    Forbidden,
    GovernanceError,
    InternalError,
    InvalidRequest,
    NotApproved,
    NotFound,
    RuleConflict,
    SessionClosed,
    TransientConflict,
    Unauthorized,
)
from steward.governance.ledger import CostLedger, CostLedgerProtocol
from steward.governance.ledger_inmemory import InMemoryCostLedger
from steward.governance.models import (
    AdaptiveRule,
    ApprovalRequest,
    ApprovalStatus,
    AuditEntry,
    AuditOutcome,
    CostRecord,
    Decision,
    RuleAction,
    RuleCondition,
    Session,
    SessionStatus,
    SessionType,
    Task,
    TaskStatus,
)
from steward.governance.reaper import ApprovalReaper
from steward.governance.rules import AdaptiveRuleEngine, EvaluationContext, MatchedRule
from steward.governance.sessions import SessionRegistry, select_provider
from steward.governance.tasks import TaskQueue

__all__ = [
    "AdaptiveRule",
    "AdaptiveRuleEngine",
    "AlreadyResolved",
    "ApprovalGate",
    "ApprovalReaper",
    "ApprovalRequest",
    "ApprovalStatus",
    "AuditEntry",
    "AuditLog",
    "AuditOutcome",
    "AuditSink",
    "BUDGET_CEILING",
    "BudgetCeilings",
    "BudgetExceeded",
    "ChainVerification",
    "Classification",
    "CostLedger",
    "CostLedgerProtocol",
    "CostRecord",
    "Decision",
    "EvaluationContext",
    "Forbidden",
    "GovernanceError",
    "InMemoryAuditLog",
    "InMemoryCostLedger",
    "InternalError",
    "InvalidRequest",
    "MatchedRule",
    "NotApproved",
    "NotFound",
    "ReservationResult",
    "RuleAction",
    "RuleCondition",
    "RuleConflict",
    "Session",
    "SessionClosed",
    "SessionRegistry",
    "SessionStatus",
    "SessionType",
    "Task",
    "TaskClassifier",
    "TaskQueue",
    "TaskStatus",
    "TransientConflict",
    "Unauthorized",
    "select_provider",
]
