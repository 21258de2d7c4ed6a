import pytest

from stepwise.errors import ContractViolation
from stepwise.executor.review_loop import ReviewLoop
from stepwise.executor.schemas import (
    ConformanceCheck,
    DriftAssessment,
    ExecutionResult,
    Recommendation,
    ReviewReport,
    Severity,
)


def execution(summary="first try") -> ExecutionResult:
    return ExecutionResult(
        success=True,
        files_modified=["src/app.py"],
        drift_assessment=DriftAssessment(severity=Severity.NONE),
        summary=summary,
    )


def report(recommendation, failing=()) -> ReviewReport:
    checks = [ConformanceCheck(check="builds", passed=True)]
    checks += [ConformanceCheck(check=name, passed=False, detail="missing") for name in failing]
    return ReviewReport(conformance_checks=checks, recommendation=recommendation)


class Scripted:
    def __init__(self, reports):
        self.reports = list(reports)
        self.reviews = 0
        self.revisions = []

    def review(self, result, attempt):
        self.reviews += 1
        return self.reports[min(self.reviews, len(self.reports)) - 1]

    def revise(self, feedback):
        self.revisions.append(feedback)
        return execution(summary=f"revision {feedback.attempt}")


def test_approve_on_first_review():
    s = Scripted([report(Recommendation.APPROVE)])
    outcome = ReviewLoop(s.review, s.revise).run("step-1", execution())

    assert outcome.recommendation == Recommendation.APPROVE
    assert outcome.attempts == 1
    assert s.revisions == []


def test_revise_then_approve_hands_back_failing_checks():
    s = Scripted([report(Recommendation.REVISE, failing=["has tests"]), report(Recommendation.APPROVE)])
    outcome = ReviewLoop(s.review, s.revise).run("step-1", execution())

    assert outcome.recommendation == Recommendation.APPROVE
    assert outcome.attempts == 2
    [feedback] = s.revisions
    assert [c.check for c in feedback.failing_checks] == ["has tests"]
    assert "FAILED has tests" in feedback.as_text()
    assert outcome.execution.summary == "revision 1"
    assert [c.check for c in outcome.failing_checks] == ["has tests"]


def test_retry_cap_bounds_reviewer_calls():
    s = Scripted([report(Recommendation.REVISE, failing=["has tests"])])
    outcome = ReviewLoop(s.review, s.revise, max_retries=3).run("step-1", execution())

    assert s.reviews == 4
    assert len(s.revisions) == 3
    assert outcome.recommendation == Recommendation.ESCALATE
    assert outcome.capped
    assert outcome.attempts == 4


def test_zero_retries_escalates_after_one_review():
    s = Scripted([report(Recommendation.REVISE, failing=["x"])])
    outcome = ReviewLoop(s.review, s.revise, max_retries=0).run("step-1", execution())
    assert s.reviews == 1
    assert outcome.capped


def test_reviewer_escalation_is_not_capped():
    s = Scripted([report(Recommendation.ESCALATE, failing=["design"])])
    outcome = ReviewLoop(s.review, s.revise).run("step-1", execution())
    assert outcome.recommendation == Recommendation.ESCALATE
    assert not outcome.capped


def test_failing_checks_accumulate_across_attempts():
    s = Scripted([
        report(Recommendation.REVISE, failing=["a"]),
        report(Recommendation.REVISE, failing=["b", "a"]),
        report(Recommendation.APPROVE),
    ])
    outcome = ReviewLoop(s.review, s.revise).run("step-1", execution())
    assert [c.check for c in outcome.failing_checks] == ["a", "b"]


def test_revise_without_failing_checks_is_a_contract_violation():
    s = Scripted([report(Recommendation.REVISE)])
    with pytest.raises(ContractViolation) as exc:
        ReviewLoop(s.review, s.revise).run("step-1", execution())
    assert exc.value.field == "conformance_checks"
    assert exc.value.phase == "review"
    assert s.revisions == []


def test_negative_retries_rejected():
    with pytest.raises(ValueError):
        ReviewLoop(lambda e, a: None, lambda f: None, max_retries=-1)
