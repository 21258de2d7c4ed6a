"""Error taxonomy for the orchestration engine.

Every halt the engine can produce maps to one exception class here. Each
class carries a stable ``code`` (used in error artifacts and JSON output)
and the CLI ``exit_code`` it maps to:

    0  clean completion
    1  halted on error (contract violation, timeout, persistence, reconcile)
    2  precondition failure (no session was created)
    3  halted on review escalation
    4  halted on drift
    5  aborted because a live session already works on the plan
"""

from typing import Any, Optional

EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_PRECONDITION = 2
EXIT_ESCALATED = 3
EXIT_DRIFT = 4
EXIT_CONFLICT = 5


class StepwiseError(Exception):
    """Base class for all engine errors."""

    code = "error"
    exit_code = EXIT_ERROR

    def __init__(self, message: str, *, phase: Optional[str] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.step = step

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "phase": self.phase,
            "step": self.step,
        }


# -- (a) preconditions: raised before any session exists --


class PreconditionError(StepwiseError):
    """Missing plan, missing tooling, invalid configuration."""

    code = "precondition_failed"
    exit_code = EXIT_PRECONDITION


class PlanValidationError(PreconditionError):
    """Plan document is structurally invalid."""

    code = "plan_invalid"

    def __init__(self, message: str, *, error_code: str = "E000"):
        super().__init__(f"{error_code}: {message}")
        self.error_code = error_code


class SessionNotFound(PreconditionError):
    code = "session_not_found"


# -- (b) collaborator contract violations --


class ContractViolation(StepwiseError):
    """A collaborator returned a response that does not meet its contract.

    The raw response is kept verbatim so the error artifact can show exactly
    what was received. Never repaired, never retried.
    """

    code = "contract_violation"

    def __init__(
        self,
        message: str,
        *,
        phase: str,
        step: Optional[str] = None,
        field: Optional[str] = None,
        raw: Any = None,
    ):
        super().__init__(message, phase=phase, step=step)
        self.field = field
        self.raw = raw

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class CollaboratorTimeout(StepwiseError):
    code = "collaborator_timeout"


class CollaboratorError(StepwiseError):
    """The collaborator process or API call itself failed."""

    code = "collaborator_error"

    def __init__(self, message: str, *, phase: Optional[str] = None, step: Optional[str] = None, raw: Any = None):
        super().__init__(message, phase=phase, step=step)
        self.raw = raw


# -- (c) policy halts: checkpoints waiting for an external decision --


class PolicyHalt(StepwiseError):
    code = "policy_halt"


class DriftHalt(PolicyHalt):
    code = "drift_halt"
    exit_code = EXIT_DRIFT

    def __init__(self, message: str, *, step: Optional[str] = None, severity: Optional[str] = None):
        super().__init__(message, phase="drift", step=step)
        self.severity = severity


class ReviewEscalated(PolicyHalt):
    code = "review_escalated"
    exit_code = EXIT_ESCALATED

    def __init__(self, message: str, *, step: Optional[str] = None, failing_checks: Optional[list[str]] = None):
        super().__init__(message, phase="review", step=step)
        self.failing_checks = failing_checks or []


class CommitDeclined(PolicyHalt):
    """Manual commit policy and the operator declined the commit."""

    code = "commit_declined"


# -- (d) finalization failures --


class PersistenceError(StepwiseError):
    """The change set could not be committed. No ticket was touched."""

    code = "persistence_failed"


class ReconciliationRequired(StepwiseError):
    """The commit landed but the ticket could not be closed.

    Carries the FinalizationRecord so the operator can reconcile the ticket
    against the commit by hand.
    """

    code = "needs_reconcile"

    def __init__(self, message: str, *, step: Optional[str] = None, record: Any = None):
        super().__init__(message, phase="finalize", step=step)
        self.record = record

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.record is not None:
            data["commit_id"] = self.record.commit_id
            data["ticket_id"] = self.record.ticket_id
        return data


class PublishError(StepwiseError):
    code = "publish_failed"

    def __init__(self, message: str, *, result: Any = None):
        super().__init__(message, phase="publish")
        self.result = result


class RunCancelled(StepwiseError):
    code = "cancelled"
