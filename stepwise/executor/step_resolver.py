"""Step selection: turn a selection intent into an ordered work list.

Intents:
    next                 first incomplete step whose dependencies are met
    remaining            every incomplete step
    all                  every step, completed ones included (replay)
    specific(anchor)     one named step
    range(start, end)    inclusive plan-order slice; either bound may be open
    ambiguous            nothing can be resolved; ask for clarification

Every candidate is checked in plan order:
    (a) it must exist in the plan
    (b) every dependency must be complete, or scheduled earlier in this
        same resolution, else it is rejected as "dependency not met"
    (c) completed steps are flagged already_completed and dropped,
        unless the intent is "all"

The output always follows plan order, never request order.
"""

import logging
import re
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from stepwise.plans.schemas import Plan, normalize_anchor

logger = logging.getLogger(__name__)


class IntentKind(str, Enum):
    NEXT = "next"
    REMAINING = "remaining"
    ALL = "all"
    SPECIFIC = "specific"
    RANGE = "range"
    AMBIGUOUS = "ambiguous"


class SelectionIntent(BaseModel):
    kind: IntentKind
    anchor: Optional[str] = None
    start: Optional[str] = None
    end: Optional[str] = None
    text: Optional[str] = Field(default=None, description="Free text the intent was inferred from")

    @classmethod
    def next(cls) -> "SelectionIntent":
        return cls(kind=IntentKind.NEXT)

    @classmethod
    def remaining(cls) -> "SelectionIntent":
        return cls(kind=IntentKind.REMAINING)

    @classmethod
    def all(cls) -> "SelectionIntent":
        return cls(kind=IntentKind.ALL)

    @classmethod
    def specific(cls, anchor: str) -> "SelectionIntent":
        return cls(kind=IntentKind.SPECIFIC, anchor=normalize_anchor(anchor))

    @classmethod
    def range(cls, start: Optional[str] = None, end: Optional[str] = None) -> "SelectionIntent":
        return cls(
            kind=IntentKind.RANGE,
            start=normalize_anchor(start) if start else None,
            end=normalize_anchor(end) if end else None,
        )

    @classmethod
    def ambiguous(cls, text: Optional[str] = None) -> "SelectionIntent":
        return cls(kind=IntentKind.AMBIGUOUS, text=text)


class DiagnosticReason(str, Enum):
    UNKNOWN_STEP = "unknown_step"
    DEPENDENCY_NOT_MET = "dependency_not_met"
    ALREADY_COMPLETED = "already_completed"
    INVALID_RANGE = "invalid_range"


class StepDiagnostic(BaseModel):
    anchor: str
    reason: DiagnosticReason
    unmet_dependencies: list[str] = Field(default_factory=list)

    def describe(self) -> str:
        if self.reason == DiagnosticReason.DEPENDENCY_NOT_MET:
            return f"{self.anchor}: dependency not met ({', '.join(self.unmet_dependencies)})"
        if self.reason == DiagnosticReason.UNKNOWN_STEP:
            return f"{self.anchor}: unknown step"
        if self.reason == DiagnosticReason.INVALID_RANGE:
            return f"{self.anchor}: range start comes after its end in plan order"
        return f"{self.anchor}: already completed"


class Resolution(BaseModel):
    intent: SelectionIntent
    steps: list[str] = Field(default_factory=list, description="Executable steps in plan order")
    diagnostics: list[StepDiagnostic] = Field(default_factory=list)
    needs_clarification: bool = False
    message: str = ""

    @property
    def rejected(self) -> list[StepDiagnostic]:
        """Diagnostics that block the request (not merely informational)."""
        return [d for d in self.diagnostics if d.reason != DiagnosticReason.ALREADY_COMPLETED]


# ── Intent inference ─────────────────────────────────────

_NEXT_WORDS = {"next", "next step", "the next one"}
_REMAINING_WORDS = {"remaining", "rest", "the rest", "continue", "resume", "remaining steps"}
_ALL_WORDS = {"all", "everything", "all steps", "replay", "from scratch"}

_RANGE_SEPARATORS = ("..", " to ", " through ", " thru ")
_OPEN_END = re.compile(r"^from\s+(?P<start>\S+?)(?:\s+onwards?)?$", re.I)
_OPEN_START = re.compile(r"^(?:up\s+to|until|through)\s+(?P<end>\S+)$", re.I)


def _split_range(raw: str) -> Optional[tuple[Optional[str], Optional[str]]]:
    m = _OPEN_START.match(raw)
    if m:
        return None, m.group("end")

    body = re.sub(r"^(?:steps?\s+)?from\s+", "", raw, flags=re.I)
    lowered = body.lower()
    for sep in _RANGE_SEPARATORS:
        idx = lowered.find(sep)
        if idx > 0:
            start = body[:idx].strip()
            end = body[idx + len(sep):].strip()
            if start and end and " " not in start and " " not in end:
                return start, end
            return None

    m = _OPEN_END.match(raw)
    if m:
        return m.group("start"), None
    return None


def infer_intent(text: Optional[str], plan: Optional[Plan] = None) -> SelectionIntent:
    """Infer a selection intent from free text.

    When a plan is given, a single token only counts as a specific step if the
    plan knows the anchor; otherwise the request is ambiguous.
    """
    if text is None or not text.strip():
        return SelectionIntent.ambiguous(text)

    cleaned = " ".join(text.strip().lower().split())
    if cleaned in _NEXT_WORDS:
        return SelectionIntent.next()
    if cleaned in _REMAINING_WORDS:
        return SelectionIntent.remaining()
    if cleaned in _ALL_WORDS:
        return SelectionIntent.all()

    raw = " ".join(text.strip().split())
    single = re.sub(r"^(?:step|run|do)\s+", "", raw, flags=re.I)
    if re.fullmatch(r"#?[\w\-]+(?:\.[\w\-]+)*", single) and (plan is None or plan.get_step(single)):
        return SelectionIntent.specific(single)

    bounds = _split_range(raw)
    if bounds is not None:
        start, end = bounds
        known = plan is None or all(plan.get_step(b) for b in (start, end) if b)
        if known:
            return SelectionIntent.range(start, end)

    return SelectionIntent.ambiguous(text)


# ── Resolution ───────────────────────────────────────────


def _candidates(plan: Plan, intent: SelectionIntent) -> tuple[list[str], list[StepDiagnostic]]:
    anchors = plan.anchors()
    diagnostics: list[StepDiagnostic] = []

    if intent.kind in (IntentKind.ALL, IntentKind.REMAINING, IntentKind.NEXT):
        return anchors, diagnostics

    if intent.kind == IntentKind.SPECIFIC:
        if intent.anchor is None or plan.get_step(intent.anchor) is None:
            diagnostics.append(StepDiagnostic(anchor=intent.anchor or "", reason=DiagnosticReason.UNKNOWN_STEP))
            return [], diagnostics
        return [intent.anchor], diagnostics

    # RANGE
    start_idx, end_idx = 0, len(anchors) - 1
    for bound in ("start", "end"):
        anchor = getattr(intent, bound)
        if anchor is None:
            continue
        idx = plan.index_of(anchor)
        if idx < 0:
            diagnostics.append(StepDiagnostic(anchor=anchor, reason=DiagnosticReason.UNKNOWN_STEP))
        elif bound == "start":
            start_idx = idx
        else:
            end_idx = idx
    if diagnostics:
        return [], diagnostics
    if start_idx > end_idx:
        diagnostics.append(
            StepDiagnostic(anchor=f"{anchors[start_idx]}..{anchors[end_idx]}", reason=DiagnosticReason.INVALID_RANGE)
        )
        return [], diagnostics
    return anchors[start_idx:end_idx + 1], diagnostics


def resolve(plan: Plan, completed_steps: Iterable[str], intent: SelectionIntent) -> Resolution:
    """Compute the executable subset of the plan for an intent."""
    completed = {normalize_anchor(s) for s in completed_steps}

    if intent.kind == IntentKind.AMBIGUOUS:
        return Resolution(
            intent=intent,
            needs_clarification=True,
            message=(
                "Could not tell which steps to run. Say 'next', 'remaining', "
                "'all', a step anchor, or a range like 'step-1..step-3'."
            ),
        )

    candidates, diagnostics = _candidates(plan, intent)
    scheduled: list[str] = []

    for anchor in candidates:
        step = plan.get_step(anchor)
        if anchor in completed and intent.kind != IntentKind.ALL:
            # Completed steps still satisfy dependents, but are not re-run
            diagnostics.append(StepDiagnostic(anchor=anchor, reason=DiagnosticReason.ALREADY_COMPLETED))
            continue

        available = completed | set(scheduled)
        unmet = [d for d in step.depends_on if d not in available]
        if unmet:
            if intent.kind == IntentKind.NEXT:
                continue
            diagnostics.append(
                StepDiagnostic(
                    anchor=anchor,
                    reason=DiagnosticReason.DEPENDENCY_NOT_MET,
                    unmet_dependencies=unmet,
                )
            )
            continue

        scheduled.append(anchor)
        if intent.kind == IntentKind.NEXT:
            break

    resolution = Resolution(intent=intent, steps=scheduled, diagnostics=diagnostics)
    if not scheduled:
        if intent.kind in (IntentKind.NEXT, IntentKind.REMAINING) and all(a in completed for a in plan.anchors()):
            resolution.message = "All steps are already complete."
        elif resolution.rejected:
            resolution.message = "; ".join(d.describe() for d in resolution.rejected)
        else:
            resolution.message = "Nothing to run."

    logger.debug(
        f"Resolved {intent.kind.value} on plan '{plan.plan_id}': "
        f"{scheduled} ({len(diagnostics)} diagnostics)"
    )
    return resolution
