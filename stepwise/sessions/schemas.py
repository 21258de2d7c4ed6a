"""Session records.

A session is the durable record of one run of a plan. Its lifecycle state is
a tagged union on ``status``:

    in_progress  {current_step, phase}
    completed    {}
    failed       {reason, at_step, last_phase, last_completed_step,
                  needs_reconcile, commit_id, ticket_id}

Invariant: steps_completed and steps_remaining are disjoint, and their union
is the resolved step set of the run.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Phase(str, Enum):
    """Phases of a step, in pipeline order."""
    RESOLVE = "resolve"
    STRATEGIZE = "strategize"
    EXECUTE = "execute"
    DRIFT = "drift"
    REVIEW = "review"
    FINALIZE = "finalize"
    PUBLISH = "publish"


class InProgress(BaseModel):
    status: Literal["in_progress"] = "in_progress"
    current_step: Optional[str] = None
    phase: Optional[Phase] = Field(
        default=None,
        description="Last phase that completed for current_step",
    )


class Completed(BaseModel):
    status: Literal["completed"] = "completed"


class Failed(BaseModel):
    status: Literal["failed"] = "failed"
    reason: str
    error_code: str = "error"
    at_step: Optional[str] = None
    last_phase: Optional[Phase] = Field(
        default=None,
        description="Last phase that completed before the failure",
    )
    last_completed_step: Optional[str] = Field(
        default=None,
        description="Step whose phase last_phase refers to",
    )
    needs_reconcile: bool = False
    commit_id: Optional[str] = None
    ticket_id: Optional[str] = None
    error_artifact: Optional[str] = None


SessionState = Annotated[Union[InProgress, Completed, Failed], Field(discriminator="status")]


class StepSummary(BaseModel):
    """What a finished step left behind; aggregated at publish time."""

    step: str
    commit_id: Optional[str] = None
    summary: str = ""
    ticket_id: Optional[str] = None
    completed_at: datetime = Field(default_factory=utcnow)


class PublishRecord(BaseModel):
    pushed: bool = False
    request_opened: bool = False
    request_ref: Optional[str] = None
    error: Optional[str] = None
    attempted_at: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """Durable record of a single run."""

    session_id: str
    plan_id: str
    plan_path: Optional[str] = None
    workspace: str = Field(description="Isolated workspace (project root or a worktree) the run operates in")
    branch: Optional[str] = None
    base_branch: Optional[str] = None

    state: SessionState = Field(default_factory=InProgress)

    steps_completed: list[str] = Field(
        default_factory=list,
        description="Steps completed by this run, in completion order",
    )
    steps_remaining: list[str] = Field(
        default_factory=list,
        description="Steps still to run, in plan order",
    )
    ticket_mapping: dict[str, str] = Field(default_factory=dict, description="step anchor -> ticket id")
    step_summaries: list[StepSummary] = Field(default_factory=list)
    publish: Optional[PublishRecord] = None

    created_at: datetime = Field(default_factory=utcnow)
    last_updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_disjoint(self) -> "Session":
        overlap = set(self.steps_completed) & set(self.steps_remaining)
        if overlap:
            raise ValueError(
                f"steps {sorted(overlap)} are both completed and remaining"
            )
        return self

    @property
    def status(self) -> SessionStatus:
        return SessionStatus(self.state.status)

    @property
    def current_step(self) -> Optional[str]:
        if isinstance(self.state, InProgress):
            return self.state.current_step
        return None

    def touch(self) -> None:
        """Advance last_updated_at, never moving it backwards."""
        self.last_updated_at = max(utcnow(), self.last_updated_at)

    def mark_phase(self, step: str, phase: Phase) -> None:
        self.state = InProgress(current_step=step, phase=phase)
        self.touch()

    def complete_step(self, step: str, summary: StepSummary) -> None:
        """Move a step from remaining to completed and record its summary."""
        if step in self.steps_remaining:
            self.steps_remaining.remove(step)
        if step not in self.steps_completed:
            self.steps_completed.append(step)
        self.step_summaries.append(summary)
        next_step = self.steps_remaining[0] if self.steps_remaining else None
        if next_step is None:
            self.state = Completed()
        else:
            self.state = InProgress(current_step=next_step)
        self.touch()

    def fail(
        self,
        reason: str,
        *,
        error_code: str = "error",
        needs_reconcile: bool = False,
        commit_id: Optional[str] = None,
        ticket_id: Optional[str] = None,
        error_artifact: Optional[str] = None,
    ) -> None:
        at_step = None
        last_phase = None
        last_completed_step = None
        if isinstance(self.state, InProgress):
            at_step = self.state.current_step
            last_phase = self.state.phase
            last_completed_step = at_step if last_phase is not None else None
        if last_phase is None and self.steps_completed:
            # Halted between steps: the previous step was fully finalized
            last_phase = Phase.FINALIZE
            last_completed_step = self.steps_completed[-1]
        self.state = Failed(
            reason=reason,
            error_code=error_code,
            at_step=at_step,
            last_phase=last_phase,
            last_completed_step=last_completed_step,
            needs_reconcile=needs_reconcile,
            commit_id=commit_id,
            ticket_id=ticket_id,
            error_artifact=error_artifact,
        )
        self.touch()


class SessionSummary(BaseModel):
    """Lightweight view of a session for listings and conflict reports."""

    session_id: str
    plan_id: str
    status: SessionStatus
    current_step: Optional[str] = None
    steps_completed: int = 0
    steps_remaining: int = 0
    workspace: str = ""
    created_at: datetime
    last_updated_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        return cls(
            session_id=session.session_id,
            plan_id=session.plan_id,
            status=session.status,
            current_step=session.current_step,
            steps_completed=len(session.steps_completed),
            steps_remaining=len(session.steps_remaining),
            workspace=session.workspace,
            created_at=session.created_at,
            last_updated_at=session.last_updated_at,
        )
