"""Schemas for plan documents.

A plan is an ordered list of steps. Each step has a unique anchor, a set of
steps it depends on, the artifacts it is expected to touch and the criteria
used to verify it. Plans are immutable for the duration of a run.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


def normalize_anchor(anchor: str) -> str:
    """Strip a leading '#' and surrounding whitespace from an anchor."""
    return anchor.strip().lstrip("#").strip()


class Step(BaseModel):
    """One unit of work in a plan."""

    anchor: str = Field(description="Unique identifier of the step within the plan, e.g. 'step-2'")
    title: str = ""
    depends_on: list[str] = Field(
        default_factory=list,
        description="Anchors of steps that must be complete before this one runs",
    )
    artifacts: list[str] = Field(
        default_factory=list,
        description="Files the step is expected to create or modify",
    )
    description: str = ""
    verification: list[str] = Field(
        default_factory=list,
        description="Criteria the reviewer checks the step against",
    )
    ticket_id: Optional[str] = Field(
        default=None,
        description="Ticket tracked for this step, closed after its commit lands",
    )

    @field_validator("anchor")
    @classmethod
    def _normalize_anchor(cls, v: str) -> str:
        v = normalize_anchor(v)
        if not v:
            raise ValueError("anchor must not be empty")
        return v

    @field_validator("depends_on")
    @classmethod
    def _normalize_deps(cls, v: list[str]) -> list[str]:
        return [normalize_anchor(d) for d in v]


class Plan(BaseModel):
    """An ordered, dependency-annotated list of steps."""

    plan_id: str
    title: str = ""
    source_path: Optional[str] = Field(
        default=None,
        description="File the plan was loaded from (set by the plan store)",
    )
    steps: list[Step] = Field(default_factory=list)

    def anchors(self) -> list[str]:
        return [s.anchor for s in self.steps]

    def get_step(self, anchor: str) -> Optional[Step]:
        anchor = normalize_anchor(anchor)
        for step in self.steps:
            if step.anchor == anchor:
                return step
        return None

    def index_of(self, anchor: str) -> int:
        """Position of a step in plan order, or -1 when unknown."""
        anchor = normalize_anchor(anchor)
        for i, step in enumerate(self.steps):
            if step.anchor == anchor:
                return i
        return -1


class PlanSummary(BaseModel):
    plan_id: str
    title: str
    step_count: int
