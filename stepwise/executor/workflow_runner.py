"""Top-level run: drives the steps of a plan through the phase pipeline.

The workflow runner is the entry point for executing a plan. It:

1. Loads the plan and checks preconditions (nothing is persisted yet)
2. Scans for live sessions on the same plan and asks whether to continue
3. Resolves the selection intent into an ordered step list
4. Creates the session, optionally in its own git worktree
5. For each step: strategize -> execute -> drift -> review loop ->
   (commit confirmation) -> finalize -> advance the session
6. Publishes the session branch once all steps are done

Steps run strictly one after another. Each collaborator call is blocking
with a timeout; a timeout or a malformed response fails the session. Every
phase boundary is a cancellation point. Every halt is captured by the error
sink with the offending response, the phase and the session id.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from stepwise.collaborators.base import Collaborator, parse_response
from stepwise.config import Settings
from stepwise.errors import (
    EXIT_CONFLICT,
    EXIT_ERROR,
    EXIT_PRECONDITION,
    EXIT_SUCCESS,
    CollaboratorError,
    CollaboratorTimeout,
    CommitDeclined,
    DriftHalt,
    PreconditionError,
    PublishError,
    ReviewEscalated,
    RunCancelled,
    StepwiseError,
)
from stepwise.executor.cancellation import clear_cancellation, is_cancelled
from stepwise.executor.drift import DriftClassifier
from stepwise.executor.error_sink import ErrorSink
from stepwise.executor.finalization import (
    ChangePersister,
    FinalizationCoordinator,
    Publisher,
    TicketTracker,
    publish,
    summary_for,
)
from stepwise.executor.impl_log import ImplementationLog
from stepwise.executor.review_loop import ReviewLoop
from stepwise.executor.schemas import (
    DriftAssessment,
    ExecutionRequest,
    ExecutionResult,
    PhaseArtifact,
    PublishResult,
    Recommendation,
    ReviewOutcome,
    ReviewReport,
    ReviewRequest,
    RevisionFeedback,
    Severity,
    Strategy,
    StrategyRequest,
)
from stepwise.executor.step_resolver import IntentKind, Resolution, SelectionIntent, resolve
from stepwise.persistence import git
from stepwise.plans.schemas import Plan, Step
from stepwise.plans.store import PlanStore
from stepwise.sessions.conflicts import ConflictDetector, ConflictReport
from stepwise.sessions.schemas import InProgress, Phase, PublishRecord, Session, SessionStatus
from stepwise.sessions.store import SessionStore, atomic_write_text, generate_session_id

logger = logging.getLogger(__name__)


class Checkpoints:
    """Decisions the engine cannot make on its own.

    The defaults never ask anyone: live conflicts abort, drift above the
    tolerance halts, and commits go ahead. Pass force=True to continue
    through conflicts and drift.
    """

    def __init__(self, force: bool = False):
        self.force = force

    def confirm_conflict(self, report: ConflictReport) -> bool:
        return self.force

    def confirm_drift(self, step: str, assessment: DriftAssessment) -> bool:
        return self.force

    def confirm_commit(self, step: str, outcome: ReviewOutcome) -> bool:
        return True


@dataclass
class RunOptions:
    intent: SelectionIntent = field(default_factory=SelectionIntent.remaining)
    commit_policy: Optional[str] = None
    drift_tolerance: Optional[str] = None
    timeout: Optional[float] = None
    worktree: bool = False
    publish: bool = True


@dataclass
class RunResult:
    exit_code: int
    message: str = ""
    session_id: Optional[str] = None
    status: Optional[SessionStatus] = None
    steps_completed: list[str] = field(default_factory=list)
    resolution: Optional[Resolution] = None
    conflicts: Optional[ConflictReport] = None
    publish: Optional[PublishResult] = None
    error_artifact: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.exit_code == EXIT_SUCCESS


@dataclass
class _StepContext:
    session: Session
    plan: Plan
    step: Step
    collaborator: Collaborator
    timeout: float
    tolerance: Severity
    strategy: Optional[Strategy] = None


class WorkflowRunner:
    """Runs plans against collaborators, one session per run."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[SessionStore] = None,
        plans: Optional[PlanStore] = None,
        *,
        collaborator_factory: Optional[Callable[[Path], Collaborator]] = None,
        persister_factory: Optional[Callable[[Path], ChangePersister]] = None,
        tickets_factory: Optional[Callable[[Path], Optional[TicketTracker]]] = None,
        publisher_factory: Optional[Callable[[Path], Publisher]] = None,
        checkpoints: Optional[Checkpoints] = None,
    ):
        self.settings = settings
        self.store = store or SessionStore(settings.resolved_state_dir())
        self.plans = plans or PlanStore(settings.resolved_plans_dir())
        self.collaborator_factory = collaborator_factory
        self.persister_factory = persister_factory
        self.tickets_factory = tickets_factory
        self.publisher_factory = publisher_factory
        self.checkpoints = checkpoints or Checkpoints()
        self.sink = ErrorSink(self.store)
        self.detector = ConflictDetector(self.store, timedelta(minutes=settings.staleness_minutes))
        self.classifier = DriftClassifier()

    # ── Factories ────────────────────────────────────────

    def _collaborator(self, workspace: Path) -> Collaborator:
        if self.collaborator_factory is not None:
            return self.collaborator_factory(workspace)
        from stepwise.collaborators.factory import get_collaborator

        return get_collaborator(self.settings, workspace)

    def _persister(self, workspace: Path) -> ChangePersister:
        if self.persister_factory is not None:
            return self.persister_factory(workspace)
        return git.GitChangePersister(workspace)

    def _tickets(self, workspace: Path) -> Optional[TicketTracker]:
        if self.tickets_factory is not None:
            return self.tickets_factory(workspace)
        if not self.settings.tickets.enabled:
            return None
        from stepwise.persistence.tickets import CommandTicketTracker

        return CommandTicketTracker(self.settings.tickets.command, cwd=str(workspace))

    def _publisher(self, workspace: Path) -> Publisher:
        if self.publisher_factory is not None:
            return self.publisher_factory(workspace)
        from stepwise.persistence.github_client import GitHubPublisher, get_github_client

        cfg = self.settings.publish
        return GitHubPublisher(
            workspace,
            remote=cfg.remote,
            base_branch=cfg.base_branch,
            client=get_github_client(cfg.github_repo, cfg.token_env),
        )

    # ── Preconditions ────────────────────────────────────

    def _check_tooling(self, plan: Plan, steps: list[str], workspace: Path) -> None:
        if self.persister_factory is None and git.repo_root(workspace) is None:
            raise PreconditionError(f"{workspace} is not inside a git repository")

        needs_tickets = any(plan.get_step(s).ticket_id for s in steps)
        if needs_tickets and self.tickets_factory is None and self.settings.tickets.enabled:
            tracker = self._tickets(workspace)
            if tracker is not None and hasattr(tracker, "available") and not tracker.available():
                raise PreconditionError(
                    f"Ticket tracker '{self.settings.tickets.command}' not found on PATH"
                )

    def _prepare_workspace(self, options: RunOptions, session_id: str) -> tuple[Path, Optional[str]]:
        root = Path(self.settings.project_root)
        if not options.worktree:
            branch = git.current_branch(root)
            return root, branch

        repo = git.repo_root(root)
        if repo is None:
            raise PreconditionError("--worktree requires a git repository")
        branch = f"stepwise/{session_id}"
        path = self.settings.resolved_state_dir() / "worktrees" / session_id
        try:
            git.create_worktree(repo, path, branch)
        except git.GitError as e:
            raise PreconditionError(f"Cannot create worktree: {e}")
        return path, branch

    # ── Collaborator calls ───────────────────────────────

    def _save_artifact(
        self,
        ctx: _StepContext,
        phase: str,
        request: Any,
        raw: Any,
        duration_ms: int,
        attempt: int = 1,
    ) -> Path:
        step_dir = self.store.artifacts_dir(ctx.session.session_id) / ctx.step.anchor
        step_dir.mkdir(parents=True, exist_ok=True)
        seq = len(list(step_dir.glob("*.json"))) + 1
        path = step_dir / f"{seq:02d}-{phase}.json"
        artifact = PhaseArtifact(
            session_id=ctx.session.session_id,
            step=ctx.step.anchor,
            phase=phase,
            attempt=attempt,
            request=request.model_dump(mode="json") if hasattr(request, "model_dump") else dict(request or {}),
            response=raw,
            duration_ms=duration_ms,
        )
        atomic_write_text(path, artifact.model_dump_json(indent=2))
        return path

    def _call(self, ctx: _StepContext, phase: str, fn: Callable[[Any], Any], request: Any, attempt: int = 1) -> Any:
        """Blocking collaborator call with the run's timeout."""
        start = time.time()
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stepwise-{phase}")
        try:
            future = pool.submit(fn, request)
            try:
                raw = future.result(timeout=ctx.timeout)
            except FuturesTimeout:
                future.cancel()
                raise CollaboratorTimeout(
                    f"{phase} collaborator did not answer within {ctx.timeout:.0f}s",
                    phase=phase,
                    step=ctx.step.anchor,
                )
            except StepwiseError:
                raise
            except Exception as e:
                raise CollaboratorError(
                    f"{phase} collaborator raised {type(e).__name__}: {e}",
                    phase=phase,
                    step=ctx.step.anchor,
                ) from e
        finally:
            pool.shutdown(wait=False)

        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8", errors="replace")
        duration_ms = int((time.time() - start) * 1000)
        self._save_artifact(ctx, phase, request, raw, duration_ms, attempt)
        logger.debug(f"[{ctx.step.anchor}] {phase} answered in {duration_ms}ms")
        return raw

    def _checkpoint(self, ctx: _StepContext, phase: Phase) -> None:
        ctx.session.mark_phase(ctx.step.anchor, phase)
        self.store.save(ctx.session)
        self._check_cancelled(ctx.session)

    def _check_cancelled(self, session: Session) -> None:
        if is_cancelled(session.session_id, self.store):
            state = session.state
            last = state.phase.value if isinstance(state, InProgress) and state.phase else "none"
            raise RunCancelled(
                f"Run cancelled after phase '{last}'",
                phase=last,
                step=session.current_step,
            )

    # ── Phases ───────────────────────────────────────────

    def _strategize(self, ctx: _StepContext, prior_feedback: Optional[str] = None) -> Strategy:
        request = StrategyRequest(
            plan_id=ctx.plan.plan_id,
            plan_path=ctx.plan.source_path,
            step=ctx.step.anchor,
            step_title=ctx.step.title,
            step_description=ctx.step.description,
            artifacts=ctx.step.artifacts,
            verification=ctx.step.verification,
            workspace=ctx.session.workspace,
            prior_feedback=prior_feedback,
        )
        raw = self._call(ctx, Phase.STRATEGIZE.value, ctx.collaborator.strategize, request)
        return parse_response(raw, Strategy, phase=Phase.STRATEGIZE.value, step=ctx.step.anchor)

    def _execute(self, ctx: _StepContext, feedback: Optional[RevisionFeedback] = None) -> ExecutionResult:
        attempt = feedback.attempt + 1 if feedback else 1
        request = ExecutionRequest(
            plan_id=ctx.plan.plan_id,
            plan_path=ctx.plan.source_path,
            step=ctx.step.anchor,
            workspace=ctx.session.workspace,
            strategy=ctx.strategy,
            feedback=feedback,
            attempt=attempt,
        )
        raw = self._call(ctx, Phase.EXECUTE.value, ctx.collaborator.execute, request, attempt)
        result = parse_response(raw, ExecutionResult, phase=Phase.EXECUTE.value, step=ctx.step.anchor)

        if result.halted_for_drift:
            raise DriftHalt(
                f"Executor halted {ctx.step.anchor} for drift: {result.drift_assessment.note}",
                step=ctx.step.anchor,
                severity=result.drift_assessment.severity.value,
            )
        if not result.success:
            raise CollaboratorError(
                f"Executor reported failure for {ctx.step.anchor}"
                + (f": {result.summary}" if result.summary else ""),
                phase=Phase.EXECUTE.value,
                step=ctx.step.anchor,
                raw=raw,
            )
        return result

    def _assess_drift(self, ctx: _StepContext, execution: ExecutionResult) -> DriftAssessment:
        assessment = self.classifier.classify(
            ctx.strategy.expected_touch_set,
            execution.changed_files,
            approach=ctx.strategy.approach,
        )
        reported = execution.drift_assessment.severity
        if reported != assessment.severity:
            logger.info(
                f"[{ctx.step.anchor}] Executor reported drift '{reported.value}', "
                f"engine classified '{assessment.severity.value}'"
            )
        self._save_artifact(ctx, Phase.DRIFT.value, {"expected": ctx.strategy.expected_touch_set}, assessment.model_dump(mode="json"), 0)

        if assessment.severity.rank > ctx.tolerance.rank:
            logger.warning(
                f"[{ctx.step.anchor}] Drift {assessment.severity.value} exceeds tolerance "
                f"{ctx.tolerance.value}: {assessment.note}"
            )
            if not self.checkpoints.confirm_drift(ctx.step.anchor, assessment):
                raise DriftHalt(
                    f"Drift {assessment.severity.value} on {ctx.step.anchor} "
                    f"(yellow={assessment.budget.yellow_used}, red={assessment.budget.red_used}) "
                    f"needs confirmation",
                    step=ctx.step.anchor,
                    severity=assessment.severity.value,
                )
            logger.info(f"[{ctx.step.anchor}] Drift confirmed; continuing")
        return assessment

    def _review(self, ctx: _StepContext, execution: ExecutionResult) -> ReviewOutcome:
        def review_fn(result: ExecutionResult, attempt: int) -> ReviewReport:
            request = ReviewRequest(
                plan_id=ctx.plan.plan_id,
                plan_path=ctx.plan.source_path,
                step=ctx.step.anchor,
                workspace=ctx.session.workspace,
                verification=ctx.step.verification,
                strategy=ctx.strategy,
                execution=result,
                attempt=attempt,
            )
            raw = self._call(ctx, Phase.REVIEW.value, ctx.collaborator.review, request, attempt)
            return parse_response(raw, ReviewReport, phase=Phase.REVIEW.value, step=ctx.step.anchor)

        def revise_fn(feedback: RevisionFeedback) -> ExecutionResult:
            self._check_cancelled(ctx.session)
            revised = self._execute(ctx, feedback)
            self._assess_drift(ctx, revised)
            self._check_cancelled(ctx.session)
            return revised

        loop = ReviewLoop(review_fn, revise_fn, max_retries=self.settings.max_review_retries)
        outcome = loop.run(ctx.step.anchor, execution)
        self._save_artifact(ctx, "review-outcome", {}, outcome.model_dump(mode="json", exclude={"execution"}), 0, outcome.attempts)

        if outcome.recommendation == Recommendation.ESCALATE:
            names = [c.check for c in outcome.failing_checks]
            raise ReviewEscalated(
                f"Review of {ctx.step.anchor} escalated after {outcome.attempts} attempt(s)"
                + (f"; failing checks: {', '.join(names)}" if names else ""),
                step=ctx.step.anchor,
                failing_checks=names,
            )
        return outcome

    def _run_step(self, ctx: _StepContext, coordinator: FinalizationCoordinator, close_ticket: bool, commit_policy: str) -> None:
        anchor = ctx.step.anchor
        ctx.session.state = InProgress(current_step=anchor)
        ctx.session.touch()
        self.store.save(ctx.session)
        self._check_cancelled(ctx.session)
        logger.info(f"[{anchor}] Starting step ({ctx.session.session_id})")

        ctx.strategy = self._strategize(ctx)
        self._checkpoint(ctx, Phase.STRATEGIZE)

        execution = self._execute(ctx)
        self._checkpoint(ctx, Phase.EXECUTE)

        self._assess_drift(ctx, execution)
        self._checkpoint(ctx, Phase.DRIFT)

        outcome = self._review(ctx, execution)
        self._checkpoint(ctx, Phase.REVIEW)
        final_execution = outcome.execution or execution

        if commit_policy == "manual" and not self.checkpoints.confirm_commit(anchor, outcome):
            raise CommitDeclined(f"Commit of {anchor} was not confirmed", phase=Phase.FINALIZE.value, step=anchor)

        summary = final_execution.summary or ctx.strategy.approach
        record = coordinator.finalize(
            anchor,
            final_execution.changed_files,
            ctx.session.ticket_mapping.get(anchor),
            summary=summary,
            plan_id=ctx.plan.plan_id,
            session_id=ctx.session.session_id,
            close_ticket=close_ticket,
        )
        self._save_artifact(ctx, Phase.FINALIZE.value, {}, record.model_dump(mode="json"), 0)

        ctx.session.mark_phase(anchor, Phase.FINALIZE)
        ctx.session.complete_step(anchor, summary_for(anchor, record, summary))
        self.store.save(ctx.session)
        logger.info(
            f"[{anchor}] Step complete: commit {record.commit_id}, ticket {record.ticket_status.value}"
        )

    # ── Entry points ─────────────────────────────────────

    def preview(self, plan_ref: str, intent: SelectionIntent) -> Resolution:
        plan = self.plans.get(plan_ref)
        return resolve(plan, self.store.completed_steps(plan.plan_id), intent)

    def run(self, plan_ref: str, options: Optional[RunOptions] = None) -> RunResult:
        options = options or RunOptions()
        commit_policy = options.commit_policy or self.settings.commit_policy
        tolerance = Severity(options.drift_tolerance or self.settings.drift_tolerance)
        timeout = options.timeout or self.settings.collaborator_timeout_seconds

        # Preconditions: nothing is persisted until all of these pass
        try:
            plan = self.plans.get(plan_ref)
        except PreconditionError as e:
            return RunResult(exit_code=e.exit_code, message=e.message, error_code=e.code)

        report = self.detector.detect(plan.plan_id)
        if report.has_conflict and not self.checkpoints.confirm_conflict(report):
            return RunResult(
                exit_code=EXIT_CONFLICT,
                message=(
                    f"Session {report.conflict.session_id} is still running plan "
                    f"'{plan.plan_id}' (last update {report.conflict.last_updated_at.isoformat()})"
                ),
                conflicts=report,
                error_code="conflict",
            )

        completed_before = self.store.completed_steps(plan.plan_id)
        resolution = resolve(plan, completed_before, options.intent)
        if resolution.needs_clarification or resolution.rejected:
            return RunResult(
                exit_code=EXIT_PRECONDITION,
                message=resolution.message,
                resolution=resolution,
                conflicts=report,
                error_code="needs_clarification" if resolution.needs_clarification else "selection_rejected",
            )
        if not resolution.steps:
            return RunResult(exit_code=EXIT_SUCCESS, message=resolution.message, resolution=resolution, conflicts=report)

        try:
            self._check_tooling(plan, resolution.steps, Path(self.settings.project_root))
            session_id = generate_session_id(plan.plan_id)
            workspace, branch = self._prepare_workspace(options, session_id)
            collaborator = self._collaborator(workspace)
        except PreconditionError as e:
            return RunResult(exit_code=e.exit_code, message=e.message, resolution=resolution, conflicts=report, error_code=e.code)

        session = self.store.create(
            plan.plan_id,
            resolution.steps,
            str(workspace),
            plan_path=plan.source_path,
            ticket_mapping={s.anchor: s.ticket_id for s in plan.steps if s.ticket_id and s.anchor in resolution.steps},
            branch=branch,
            base_branch=self.settings.publish.base_branch,
            session_id=session_id,
        )
        coordinator = FinalizationCoordinator(
            ImplementationLog(
                self.settings.log_path_for(workspace),
                max_entries=self.settings.log.max_entries,
                max_bytes=self.settings.log.max_bytes,
            ),
            self._persister(workspace),
            self._tickets(workspace),
        )
        replayed = completed_before if options.intent.kind == IntentKind.ALL else set()

        try:
            for anchor in resolution.steps:
                ctx = _StepContext(
                    session=session,
                    plan=plan,
                    step=plan.get_step(anchor),
                    collaborator=collaborator,
                    timeout=timeout,
                    tolerance=tolerance,
                )
                self._run_step(ctx, coordinator, close_ticket=anchor not in replayed, commit_policy=commit_policy)
        except StepwiseError as e:
            return self._halt(session, e, resolution, report)
        except KeyboardInterrupt:
            return self._halt(session, RunCancelled("Run interrupted", step=session.current_step), resolution, report)
        except Exception as e:
            logger.error(f"Session {session.session_id} failed unexpectedly: {e}", exc_info=True)
            error = StepwiseError(f"{type(e).__name__}: {e}", step=session.current_step)
            return self._halt(session, error, resolution, report)
        finally:
            clear_cancellation(session.session_id, self.store)

        logger.info(
            f"Session {session.session_id} completed {len(session.steps_completed)} step(s)"
        )
        result = RunResult(
            exit_code=EXIT_SUCCESS,
            message=f"Completed {len(session.steps_completed)} step(s)",
            session_id=session.session_id,
            status=session.status,
            steps_completed=list(session.steps_completed),
            resolution=resolution,
            conflicts=report,
        )

        if options.publish and self.settings.publish.enabled and session.branch:
            result = self._publish(session, result)
        return result

    def publish_session(self, session_id: str) -> RunResult:
        """Publish (or retry publishing) a completed session."""
        session = self.store.load(session_id)
        if session.status != SessionStatus.COMPLETED:
            raise PreconditionError(
                f"Session {session_id} is {session.status.value}; only completed sessions can be published"
            )
        result = RunResult(
            exit_code=EXIT_SUCCESS,
            session_id=session.session_id,
            status=session.status,
            steps_completed=list(session.steps_completed),
        )
        return self._publish(session, result)

    # ── Helpers ──────────────────────────────────────────

    def _publish(self, session: Session, result: RunResult) -> RunResult:
        publisher = self._publisher(Path(session.workspace))
        summary_path = self.store.artifacts_dir(session.session_id) / "publish-summary.md"
        try:
            outcome = publish(session, publisher, summary_path)
        except PublishError as e:
            outcome = e.result or PublishResult(pushed=False, error=e.message)
            artifact = self.sink.record(session, e)
            result.error_artifact = str(artifact)
            result.exit_code = EXIT_ERROR
            result.error_code = e.code
            result.message = f"{result.message}; publish failed: {e.message}".lstrip("; ")

        session.publish = PublishRecord(**outcome.model_dump())
        session.touch()
        self.store.save(session)
        result.publish = outcome

        if outcome.pushed and not outcome.request_opened:
            result.exit_code = EXIT_ERROR
            result.error_code = "publish_failed"
            result.message = (
                f"{result.message}; branch {session.branch} pushed but the pull request was not "
                f"opened ({outcome.error}). Retry with: stepwise publish {session.session_id}"
            ).lstrip("; ")
        elif outcome.request_opened:
            result.message = f"{result.message}; pull request {outcome.request_ref}".lstrip("; ")
        return result

    def _halt(
        self,
        session: Session,
        error: StepwiseError,
        resolution: Resolution,
        report: ConflictReport,
    ) -> RunResult:
        path = self.sink.capture(session, error)
        return RunResult(
            exit_code=error.exit_code,
            message=error.message,
            session_id=session.session_id,
            status=session.status,
            steps_completed=list(session.steps_completed),
            resolution=resolution,
            conflicts=report,
            error_artifact=str(path),
            error_code=error.code,
        )
