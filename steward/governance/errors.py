"""Typed failures surfaced by the governance engine.

Every error carries a stable machine-readable ``code`` and the HTTP status the
API layer maps it to. Messages never include data owned by another user.
"""


class GovernanceError(Exception):
    """Base exception for governance operations."""

    code: str = "governance_error"
    http_status: int = 400
    # Set once the failure is in the caller's audit chain.
    audited: bool = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class Unauthorized(GovernanceError):
    """Raised when a request carries no valid credential."""

    code = "unauthorized"
    http_status = 401


class Forbidden(GovernanceError):
    """Raised when an authenticated identity lacks reviewer or admin privilege."""

    code = "forbidden"
    http_status = 403


class NotFound(GovernanceError):
    """Raised when an entity is absent or owned by someone else."""

    code = "not_found"
    http_status = 404

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")


class InvalidRequest(GovernanceError):
    """Raised when input fails validation."""

    code = "invalid_request"
    http_status = 400


class SessionClosed(GovernanceError):
    """Raised when work is attempted against a closed session."""

    code = "session_closed"
    http_status = 409

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"session is closed: {session_id}")


class BudgetExceeded(GovernanceError):
    """Daily ceiling breach. Submission converts it into forced approval."""

    code = "budget_exceeded"
    http_status = 402


class NotApproved(GovernanceError):
    """Raised when a task transition requires a state the task is not in."""

    code = "not_approved"
    http_status = 409

    def __init__(self, task_id: str, status: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"task {task_id} is {status}")


class AlreadyResolved(GovernanceError):
    """Raised when an approval request has already been resolved."""

    code = "already_resolved"
    http_status = 409

    def __init__(self, approval_id: str, status: str) -> None:
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"approval request {approval_id} is already {status}")


class RuleConflict(GovernanceError):
    """Raised when a rule change races another version or reuses an id."""

    code = "rule_conflict"
    http_status = 409


class InternalError(GovernanceError):
    """Unexpected failure, or transient conflicts that outlived the retry budget."""

    code = "internal"
    http_status = 500


class TransientConflict(Exception):
    """Lost race on a persistence check-and-act; safe to retry."""
