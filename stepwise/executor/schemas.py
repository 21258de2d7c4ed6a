"""Executor-side schemas: collaborator contracts and per-step outcomes.

Collaborator responses are validated against these models as they arrive.
A response that does not validate is a contract violation; the engine never
repairs one.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Severity(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @property
    def requires_confirmation(self) -> bool:
        return self in (Severity.MODERATE, Severity.MAJOR)


_SEVERITY_ORDER = [Severity.NONE, Severity.MINOR, Severity.MODERATE, Severity.MAJOR]


class DriftCategory(str, Enum):
    YELLOW = "yellow"
    RED = "red"


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REVISE = "REVISE"
    ESCALATE = "ESCALATE"


class TicketStatus(str, Enum):
    CLOSED = "closed"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING = "pending"


# ── Drift ────────────────────────────────────────────────


class UnexpectedChange(BaseModel):
    file: str
    category: DriftCategory
    reason: str = ""
    leeway: bool = Field(
        default=False,
        description="Test/config/doc artifact; counts at half weight when yellow",
    )


class DriftBudget(BaseModel):
    yellow_used: int = 0
    yellow_max: int = 4
    red_used: int = 0
    red_max: int = 1
    score: int = Field(default=0, description="yellow + 2 * red")


class DriftAssessment(BaseModel):
    """Scope drift of one execution against its expected touch set."""

    severity: Severity
    expected_files: list[str] = Field(default_factory=list)
    actual_changes: list[str] = Field(default_factory=list)
    unexpected_changes: list[UnexpectedChange] = Field(default_factory=list)
    budget: DriftBudget = Field(default_factory=DriftBudget)
    note: str = ""


# ── Collaborator contracts ───────────────────────────────


class Strategy(BaseModel):
    """Strategist response."""

    approach: str = Field(min_length=1)
    expected_touch_set: list[str]
    ordered_substeps: list[str] = Field(default_factory=list)
    verification_plan: str = ""
    risks: list[str] = Field(default_factory=list)


class ExecutionResult(BaseModel):
    """Executor response. drift_assessment is mandatory."""

    success: bool
    halted_for_drift: bool = False
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    tests_run: int = 0
    tests_passed: int = 0
    drift_assessment: DriftAssessment
    summary: str = ""

    @property
    def changed_files(self) -> list[str]:
        seen: list[str] = []
        for f in self.files_created + self.files_modified:
            if f not in seen:
                seen.append(f)
        return seen


class ConformanceCheck(BaseModel):
    check: str
    passed: bool
    detail: str = ""


class ReviewReport(BaseModel):
    """Reviewer response."""

    conformance_checks: list[ConformanceCheck] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)
    recommendation: Recommendation
    summary: str = ""

    @property
    def failing_checks(self) -> list[ConformanceCheck]:
        return [c for c in self.conformance_checks if not c.passed]


class RevisionFeedback(BaseModel):
    """Failing checks handed back to the executor for another attempt."""

    attempt: int
    failing_checks: list[ConformanceCheck] = Field(default_factory=list)
    issues: list[str] = Field(default_factory=list)

    def as_text(self) -> str:
        lines = [f"Review attempt {self.attempt} requested revisions:"]
        for c in self.failing_checks:
            lines.append(f"- FAILED {c.check}: {c.detail}" if c.detail else f"- FAILED {c.check}")
        for issue in self.issues:
            lines.append(f"- ISSUE {issue}")
        return "\n".join(lines)


class ReviewOutcome(BaseModel):
    """Terminal verdict of the review loop for one step."""

    step: str
    recommendation: Recommendation
    attempts: int = Field(ge=1, description="Reviewer invocations made")
    checks: list[ConformanceCheck] = Field(
        default_factory=list,
        description="Checks from the final review",
    )
    failing_checks: list[ConformanceCheck] = Field(
        default_factory=list,
        description="Every failing check seen across attempts (deduplicated by name)",
    )
    issues: list[str] = Field(default_factory=list)
    execution: Optional[ExecutionResult] = Field(
        default=None,
        description="Execution result the final review judged",
    )
    capped: bool = Field(default=False, description="ESCALATE forced by the retry cap")


class StrategyRequest(BaseModel):
    plan_id: str
    plan_path: Optional[str] = None
    step: str
    step_title: str = ""
    step_description: str = ""
    artifacts: list[str] = Field(default_factory=list)
    verification: list[str] = Field(default_factory=list)
    workspace: str
    prior_feedback: Optional[str] = None


class ExecutionRequest(BaseModel):
    plan_id: str
    plan_path: Optional[str] = None
    step: str
    workspace: str
    strategy: Strategy
    feedback: Optional[RevisionFeedback] = None
    attempt: int = 1


class ReviewRequest(BaseModel):
    plan_id: str
    plan_path: Optional[str] = None
    step: str
    workspace: str
    verification: list[str] = Field(default_factory=list)
    strategy: Strategy
    execution: ExecutionResult
    attempt: int = 1


# ── Finalization / publish ───────────────────────────────


class FinalizationRecord(BaseModel):
    """Outcome of committing a step and closing its ticket."""

    step: str
    commit_id: Optional[str] = Field(default=None, description="Set once the commit lands")
    ticket_id: Optional[str] = None
    ticket_status: TicketStatus = TicketStatus.PENDING
    needs_reconcile: bool = Field(
        default=False,
        description="True exactly when the commit landed but the ticket could not be closed",
    )
    log_rotated: bool = False
    archived_log: Optional[str] = None
    files_persisted: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class PublishResult(BaseModel):
    pushed: bool = False
    request_opened: bool = False
    request_ref: Optional[str] = None
    error: Optional[str] = None


class PhaseArtifact(BaseModel):
    """Raw collaborator exchange as persisted in the artifacts directory."""

    session_id: str
    step: str
    phase: str
    attempt: int = 1
    request: dict[str, Any] = Field(default_factory=dict)
    response: Any = None
    duration_ms: int = 0
