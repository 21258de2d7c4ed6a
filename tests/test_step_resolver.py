import pytest

from stepwise.executor.step_resolver import (
    DiagnosticReason,
    IntentKind,
    SelectionIntent,
    infer_intent,
    resolve,
)
from stepwise.plans.schemas import Plan, Step


@pytest.fixture
def plan() -> Plan:
    return Plan(
        plan_id="demo",
        steps=[
            Step(anchor="A"),
            Step(anchor="B", depends_on=["A"]),
            Step(anchor="C"),
            Step(anchor="D", depends_on=["B", "C"]),
        ],
    )


def test_specific_step_with_unmet_dependency_is_rejected(plan):
    resolution = resolve(plan, set(), SelectionIntent.specific("B"))

    assert resolution.steps == []
    [diag] = resolution.rejected
    assert diag.anchor == "B"
    assert diag.reason == DiagnosticReason.DEPENDENCY_NOT_MET
    assert diag.unmet_dependencies == ["A"]
    assert "A" in resolution.message


def test_specific_step_after_dependency_completes(plan):
    resolution = resolve(plan, {"A"}, SelectionIntent.specific("#B"))
    assert resolution.steps == ["B"]
    assert resolution.diagnostics == []


def test_remaining_schedules_dependencies_in_plan_order(plan):
    resolution = resolve(plan, set(), SelectionIntent.remaining())
    assert resolution.steps == ["A", "B", "C", "D"]


def test_remaining_skips_completed_steps(plan):
    resolution = resolve(plan, {"A", "C"}, SelectionIntent.remaining())

    assert resolution.steps == ["B", "D"]
    flagged = {d.anchor for d in resolution.diagnostics if d.reason == DiagnosticReason.ALREADY_COMPLETED}
    assert flagged == {"A", "C"}
    assert resolution.rejected == []


def test_all_is_idempotent_and_includes_completed(plan):
    first = resolve(plan, {"A", "B"}, SelectionIntent.all())
    second = resolve(plan, {"A", "B"}, SelectionIntent.all())

    assert first.steps == ["A", "B", "C", "D"]
    assert first.steps == second.steps


def test_next_is_first_runnable_step(plan):
    assert resolve(plan, set(), SelectionIntent.next()).steps == ["A"]
    assert resolve(plan, {"A"}, SelectionIntent.next()).steps == ["B"]
    assert resolve(plan, {"A", "B"}, SelectionIntent.next()).steps == ["C"]


def test_next_when_everything_is_done(plan):
    resolution = resolve(plan, {"A", "B", "C", "D"}, SelectionIntent.next())
    assert resolution.steps == []
    assert resolution.message == "All steps are already complete."


def test_range_is_inclusive_and_follows_plan_order(plan):
    resolution = resolve(plan, {"A"}, SelectionIntent.range("B", "C"))
    assert resolution.steps == ["B", "C"]


def test_open_ended_ranges(plan):
    assert resolve(plan, {"A", "B"}, SelectionIntent.range(start="C")).steps == ["C", "D"]
    assert resolve(plan, set(), SelectionIntent.range(end="B")).steps == ["A", "B"]


def test_range_with_unknown_bound(plan):
    resolution = resolve(plan, set(), SelectionIntent.range("A", "Z"))
    assert resolution.steps == []
    assert resolution.rejected[0].reason == DiagnosticReason.UNKNOWN_STEP


def test_reversed_range_is_rejected(plan):
    resolution = resolve(plan, set(), SelectionIntent.range("C", "A"))
    assert resolution.steps == []
    [diag] = resolution.rejected
    assert diag.reason == DiagnosticReason.INVALID_RANGE
    assert diag.anchor == "C..A"
    assert "comes after its end" in resolution.message


def test_unknown_specific_step(plan):
    resolution = resolve(plan, set(), SelectionIntent.specific("Z"))
    assert resolution.rejected[0].describe() == "Z: unknown step"


def test_range_rejects_step_whose_dependency_is_outside(plan):
    resolution = resolve(plan, set(), SelectionIntent.range("C", "D"))
    assert resolution.steps == ["C"]
    [diag] = resolution.rejected
    assert diag.anchor == "D"
    assert diag.unmet_dependencies == ["B"]


def test_ambiguous_intent_needs_clarification(plan):
    resolution = resolve(plan, set(), SelectionIntent.ambiguous("do the thing"))
    assert resolution.needs_clarification
    assert resolution.steps == []


@pytest.mark.parametrize(
    "text, kind",
    [
        ("next", IntentKind.NEXT),
        ("  Next Step ", IntentKind.NEXT),
        ("the rest", IntentKind.REMAINING),
        ("resume", IntentKind.REMAINING),
        ("everything", IntentKind.ALL),
        ("", IntentKind.AMBIGUOUS),
        ("please make it better", IntentKind.AMBIGUOUS),
    ],
)
def test_infer_keywords(plan, text, kind):
    assert infer_intent(text, plan).kind == kind


def test_infer_specific_and_ranges(plan):
    specific = infer_intent("step B", plan)
    assert (specific.kind, specific.anchor) == (IntentKind.SPECIFIC, "B")

    dotted = infer_intent("A..C", plan)
    assert (dotted.kind, dotted.start, dotted.end) == (IntentKind.RANGE, "A", "C")

    worded = infer_intent("from B to D", plan)
    assert (worded.start, worded.end) == ("B", "D")

    open_end = infer_intent("from C onwards", plan)
    assert (open_end.start, open_end.end) == ("C", None)

    open_start = infer_intent("up to B", plan)
    assert (open_start.start, open_start.end) == (None, "B")


def test_infer_unknown_anchor_is_ambiguous(plan):
    assert infer_intent("Z", plan).kind == IntentKind.AMBIGUOUS
    assert infer_intent("A to Z", plan).kind == IntentKind.AMBIGUOUS


def test_infer_dotted_anchors():
    plan = Plan(plan_id="p", steps=[Step(anchor="step-1.1"), Step(anchor="step-1.2"), Step(anchor="step-2")])
    intent = infer_intent("step-1.2..step-2", plan)
    assert (intent.kind, intent.start, intent.end) == (IntentKind.RANGE, "step-1.2", "step-2")
    assert infer_intent("#step-1.1", plan).anchor == "step-1.1"
