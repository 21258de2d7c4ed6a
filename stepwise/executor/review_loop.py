"""Bounded review/revise loop for a single step.

    attempt = 1
    loop:
        report = review(execution)
        APPROVE                        -> done
        ESCALATE                       -> done
        REVISE and attempt <= max      -> feed failing checks back, re-execute
        REVISE and attempt >  max      -> forced ESCALATE

With max_retries = 3 the reviewer is called at most four times and the
executor is re-invoked at most three times. A REVISE that names no failing
check and no issue gives the executor nothing to act on and is treated as a
contract violation.
"""

import logging
from typing import Callable

from stepwise.errors import ContractViolation
from stepwise.executor.schemas import (
    ConformanceCheck,
    ExecutionResult,
    Recommendation,
    ReviewOutcome,
    ReviewReport,
    RevisionFeedback,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

ReviewFn = Callable[[ExecutionResult, int], ReviewReport]
ReviseFn = Callable[[RevisionFeedback], ExecutionResult]


class ReviewLoop:
    """Drives the reviewer to a terminal verdict."""

    def __init__(self, review_fn: ReviewFn, revise_fn: ReviseFn, max_retries: int = DEFAULT_MAX_RETRIES):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.review_fn = review_fn
        self.revise_fn = revise_fn
        self.max_retries = max_retries

    def run(self, step: str, execution: ExecutionResult) -> ReviewOutcome:
        attempt = 1
        seen_failures: dict[str, ConformanceCheck] = {}
        issues: list[str] = []

        while True:
            report = self.review_fn(execution, attempt)
            for check in report.failing_checks:
                seen_failures[check.check] = check
            for issue in report.issues:
                if issue not in issues:
                    issues.append(issue)

            logger.info(
                f"[{step}] Review attempt {attempt}: {report.recommendation.value} "
                f"({len(report.failing_checks)} failing check(s), {len(report.issues)} issue(s))"
            )

            if report.recommendation in (Recommendation.APPROVE, Recommendation.ESCALATE):
                return ReviewOutcome(
                    step=step,
                    recommendation=report.recommendation,
                    attempts=attempt,
                    checks=report.conformance_checks,
                    failing_checks=list(seen_failures.values()),
                    issues=issues,
                    execution=execution,
                )

            if not report.failing_checks and not report.issues:
                raise ContractViolation(
                    "Reviewer asked for revisions without naming a failing check or issue",
                    phase="review",
                    step=step,
                    field="conformance_checks",
                    raw=report.model_dump(mode="json"),
                )

            if attempt > self.max_retries:
                logger.warning(
                    f"[{step}] Review retry cap ({self.max_retries}) reached; escalating"
                )
                return ReviewOutcome(
                    step=step,
                    recommendation=Recommendation.ESCALATE,
                    attempts=attempt,
                    checks=report.conformance_checks,
                    failing_checks=list(seen_failures.values()),
                    issues=issues,
                    execution=execution,
                    capped=True,
                )

            feedback = RevisionFeedback(
                attempt=attempt,
                failing_checks=report.failing_checks,
                issues=report.issues,
            )
            execution = self.revise_fn(feedback)
            attempt += 1
