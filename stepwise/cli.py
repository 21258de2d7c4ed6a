"""Stepwise command line.

Usage:
    stepwise run <plan> [--next | --all | --step A | --start-step A --end-step B | --steps TEXT]
                        [--commit-policy manual|auto] [--drift-tolerance LEVEL]
                        [--force] [--worktree] [--no-publish] [--timeout SECONDS]
    stepwise resolve <plan> [selection flags]
    stepwise sessions [--plan PLAN] [--status STATUS]
    stepwise session <session_id>
    stepwise conflicts <plan>
    stepwise cancel <session_id>
    stepwise delete <session_id>
    stepwise publish <session_id>
    stepwise log rotate [--force]
    stepwise log prepend --step STEP --plan PLAN --summary TEXT [--ticket ID]

Exit codes:
    0  completed          3  halted: review escalated
    1  halted on error    4  halted: drift needs confirmation
    2  precondition       5  aborted: live session on the same plan

Configuration is read from stepwise.yaml in the current directory.
"""

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from stepwise import __version__
from stepwise.config import Settings, load_settings
from stepwise.errors import EXIT_PRECONDITION, EXIT_SUCCESS, StepwiseError
from stepwise.executor.cancellation import request_cancellation
from stepwise.executor.impl_log import ImplementationLog, LogEntry
from stepwise.executor.schemas import DriftAssessment, ReviewOutcome
from stepwise.executor.step_resolver import Resolution, SelectionIntent, infer_intent
from stepwise.executor.workflow_runner import Checkpoints, RunOptions, RunResult, WorkflowRunner
from stepwise.plans.schemas import Plan
from stepwise.plans.store import PlanStore
from stepwise.sessions.conflicts import ConflictDetector, ConflictReport
from stepwise.sessions.schemas import SessionStatus
from stepwise.sessions.store import SessionStore

logger = logging.getLogger(__name__)


class PromptCheckpoints(Checkpoints):
    """Asks on the terminal; without a terminal, falls back to the flags."""

    def __init__(self, force: bool = False, interactive: Optional[bool] = None):
        super().__init__(force=force)
        self.interactive = sys.stdin.isatty() if interactive is None else interactive

    def _ask(self, question: str) -> bool:
        if not self.interactive:
            return False
        answer = input(f"{question} [y/N] ").strip().lower()
        return answer in ("y", "yes")

    def confirm_conflict(self, report: ConflictReport) -> bool:
        if self.force:
            return True
        c = report.conflict
        print(
            f"Session {c.session_id} is still working on plan '{report.plan_id}' "
            f"(step {c.current_step or '-'}, last update {c.last_updated_at.isoformat()})."
        )
        return self._ask("Continue anyway?")

    def confirm_drift(self, step: str, assessment: DriftAssessment) -> bool:
        if self.force:
            return True
        print(f"Drift on {step}: {assessment.severity.value}")
        for change in assessment.unexpected_changes:
            print(f"  [{change.category.value}] {change.file} - {change.reason}")
        print(f"  {assessment.note}")
        return self._ask("Accept this drift and continue?")

    def confirm_commit(self, step: str, outcome: ReviewOutcome) -> bool:
        files = outcome.execution.changed_files if outcome.execution else []
        print(f"Review approved {step} after {outcome.attempts} attempt(s). Files:")
        for f in files:
            print(f"  {f}")
        return self._ask("Commit this step?")


# ── Output helpers ───────────────────────────────────────


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _print_resolution(resolution: Resolution) -> None:
    if resolution.needs_clarification:
        print(resolution.message)
        return
    if resolution.steps:
        print("Steps to run:")
        for i, anchor in enumerate(resolution.steps, 1):
            print(f"  {i}. {anchor}")
    for d in resolution.diagnostics:
        print(f"  ! {d.describe()}")
    if resolution.message:
        print(resolution.message)


def _print_result(result: RunResult) -> None:
    if result.conflicts is not None:
        for s in result.conflicts.abandoned:
            print(f"note: session {s.session_id} looks abandoned (last update {s.last_updated_at.isoformat()})")
    if result.resolution is not None and not result.ok and not result.session_id:
        _print_resolution(result.resolution)
    if result.session_id:
        print(f"Session: {result.session_id} ({result.status.value if result.status else '-'})")
    if result.steps_completed:
        print(f"Completed: {', '.join(result.steps_completed)}")
    if result.message:
        print(result.message)
    if result.error_artifact:
        print(f"Error details: {result.error_artifact}")


def _result_dict(result: RunResult) -> dict:
    return {
        "exit_code": result.exit_code,
        "message": result.message,
        "session_id": result.session_id,
        "status": result.status.value if result.status else None,
        "steps_completed": result.steps_completed,
        "error_code": result.error_code,
        "error_artifact": result.error_artifact,
        "resolution": result.resolution.model_dump(mode="json") if result.resolution else None,
        "publish": result.publish.model_dump(mode="json") if result.publish else None,
    }


# ── Selection ────────────────────────────────────────────


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("step selection (default: remaining)")
    group.add_argument("--next", action="store_true", help="Run only the next runnable step")
    group.add_argument("--all", action="store_true", help="Replay every step, completed ones included")
    group.add_argument("--step", help="Run one specific step")
    group.add_argument("--start-step", help="First step of an inclusive range")
    group.add_argument("--end-step", help="Last step of an inclusive range")
    group.add_argument("--steps", help="Free-text selection, e.g. 'next', 'step-2 to step-4'")


def _selection(args: argparse.Namespace, plan: Plan) -> SelectionIntent:
    if args.steps:
        return infer_intent(args.steps, plan)
    if args.next:
        return SelectionIntent.next()
    if args.all:
        return SelectionIntent.all()
    if args.step:
        return SelectionIntent.specific(args.step)
    if args.start_step or args.end_step:
        return SelectionIntent.range(args.start_step, args.end_step)
    return SelectionIntent.remaining()


# ── Commands ─────────────────────────────────────────────


def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    runner = WorkflowRunner(settings, checkpoints=PromptCheckpoints(force=args.force))
    plan = runner.plans.get(args.plan)
    options = RunOptions(
        intent=_selection(args, plan),
        commit_policy=args.commit_policy,
        drift_tolerance=args.drift_tolerance,
        timeout=args.timeout,
        worktree=args.worktree,
        publish=not args.no_publish,
    )
    result = runner.run(args.plan, options)
    if args.json:
        _print_json(_result_dict(result))
    else:
        _print_result(result)
    return result.exit_code


def cmd_resolve(args: argparse.Namespace, settings: Settings) -> int:
    runner = WorkflowRunner(settings)
    plan = runner.plans.get(args.plan)
    resolution = runner.preview(args.plan, _selection(args, plan))
    if args.json:
        _print_json(resolution.model_dump(mode="json"))
    else:
        _print_resolution(resolution)
    if resolution.needs_clarification or resolution.rejected:
        return EXIT_PRECONDITION
    return EXIT_SUCCESS


def cmd_sessions(args: argparse.Namespace, settings: Settings) -> int:
    store = SessionStore(settings.resolved_state_dir())
    status = SessionStatus(args.status) if args.status else None
    summaries = store.list_all(plan_id=args.plan, status=status)
    if args.json:
        _print_json([s.model_dump(mode="json") for s in summaries])
        return EXIT_SUCCESS
    if not summaries:
        print("No sessions.")
    for s in summaries:
        print(
            f"{s.session_id}  {s.status.value:<11}  {s.plan_id}  "
            f"{s.steps_completed} done / {s.steps_remaining} left  "
            f"updated {s.last_updated_at.isoformat()}"
        )
    return EXIT_SUCCESS


def cmd_session(args: argparse.Namespace, settings: Settings) -> int:
    store = SessionStore(settings.resolved_state_dir())
    session = store.load(args.session_id)
    print(session.model_dump_json(indent=2))
    return EXIT_SUCCESS


def cmd_conflicts(args: argparse.Namespace, settings: Settings) -> int:
    store = SessionStore(settings.resolved_state_dir())
    plan = PlanStore(settings.resolved_plans_dir()).get(args.plan)
    report = ConflictDetector(store, timedelta(minutes=settings.staleness_minutes)).detect(plan.plan_id)
    if args.json:
        _print_json(report.model_dump(mode="json"))
        return EXIT_SUCCESS
    if report.conflict is None:
        print(f"No live sessions on '{plan.plan_id}'.")
    for s in report.live:
        print(f"live       {s.session_id}  step {s.current_step or '-'}  updated {s.last_updated_at.isoformat()}")
    for s in report.abandoned:
        print(f"abandoned  {s.session_id}  step {s.current_step or '-'}  updated {s.last_updated_at.isoformat()}")
    return EXIT_SUCCESS


def cmd_cancel(args: argparse.Namespace, settings: Settings) -> int:
    store = SessionStore(settings.resolved_state_dir())
    request_cancellation(args.session_id, store)
    print(f"Cancellation requested for {args.session_id}; the run stops at its next phase boundary.")
    return EXIT_SUCCESS


def cmd_delete(args: argparse.Namespace, settings: Settings) -> int:
    store = SessionStore(settings.resolved_state_dir())
    store.delete(args.session_id)
    print(f"Deleted session {args.session_id}")
    return EXIT_SUCCESS


def cmd_publish(args: argparse.Namespace, settings: Settings) -> int:
    result = WorkflowRunner(settings).publish_session(args.session_id)
    if args.json:
        _print_json(_result_dict(result))
    else:
        _print_result(result)
    return result.exit_code


def cmd_log(args: argparse.Namespace, settings: Settings) -> int:
    log = ImplementationLog(
        settings.log_path_for(settings.project_root),
        max_entries=settings.log.max_entries,
        max_bytes=settings.log.max_bytes,
    )
    if args.log_command == "rotate":
        result = log.rotate(force=args.force)
        if result.rotated:
            print(f"Archived {result.entries} entries to {result.archived_path}")
        else:
            print(f"No rotation needed ({result.entries} entries, {result.size_bytes} bytes)")
        return EXIT_SUCCESS

    rotation = log.rotate()
    if rotation.rotated:
        print(f"Archived {rotation.entries} entries to {rotation.archived_path}")
    log.prepend(LogEntry(step=args.step, plan_id=args.plan, summary=args.summary, ticket_id=args.ticket))
    print(f"Logged {args.step} in {log.path}")
    return EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepwise",
        description="Drive the steps of a plan through strategize, execute, review and commit.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--version", action="version", version=f"stepwise {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--json", action="store_true", help="Machine-readable output")
    parser.add_argument("--config", type=Path, help="Path to stepwise.yaml")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run plan steps")
    p.add_argument("plan", help="Plan id or path to a plan file")
    _add_selection_args(p)
    p.add_argument("--commit-policy", choices=["manual", "auto"], help="Ask before each commit (manual)")
    p.add_argument(
        "--drift-tolerance",
        choices=["none", "minor", "moderate", "major"],
        help="Highest drift severity accepted without confirmation",
    )
    p.add_argument("--force", action="store_true", help="Continue through live conflicts and drift")
    p.add_argument("--worktree", action="store_true", help="Run in a fresh git worktree and branch")
    p.add_argument("--no-publish", action="store_true", help="Skip push and pull request")
    p.add_argument("--timeout", type=float, help="Collaborator timeout in seconds")
    p.set_defaults(func=cmd_run)

    p = sub.add_parser("resolve", help="Show which steps a run would execute")
    p.add_argument("plan")
    _add_selection_args(p)
    p.set_defaults(func=cmd_resolve)

    p = sub.add_parser("sessions", help="List sessions")
    p.add_argument("--plan")
    p.add_argument("--status", choices=[s.value for s in SessionStatus])
    p.set_defaults(func=cmd_sessions)

    p = sub.add_parser("session", help="Show one session")
    p.add_argument("session_id")
    p.set_defaults(func=cmd_session)

    p = sub.add_parser("conflicts", help="Show other sessions on a plan")
    p.add_argument("plan")
    p.set_defaults(func=cmd_conflicts)

    p = sub.add_parser("cancel", help="Stop a running session at its next phase boundary")
    p.add_argument("session_id")
    p.set_defaults(func=cmd_cancel)

    p = sub.add_parser("delete", help="Remove a session record and its artifacts")
    p.add_argument("session_id")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("publish", help="Push and open a pull request for a completed session")
    p.add_argument("session_id")
    p.set_defaults(func=cmd_publish)

    p = sub.add_parser("log", help="Implementation log maintenance")
    log_sub = p.add_subparsers(dest="log_command", required=True)
    lp = log_sub.add_parser("rotate", help="Archive the log if over threshold")
    lp.add_argument("--force", action="store_true", help="Archive regardless of size")
    lp = log_sub.add_parser("prepend", help="Add an entry by hand")
    lp.add_argument("--step", required=True)
    lp.add_argument("--plan", required=True)
    lp.add_argument("--summary", required=True)
    lp.add_argument("--ticket")
    p.set_defaults(func=cmd_log)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        settings = load_settings(config_path=args.config)
        return args.func(args, settings)
    except StepwiseError as e:
        if args.json:
            _print_json(e.to_dict())
        else:
            print(f"error: {e.message}", file=sys.stderr)
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
