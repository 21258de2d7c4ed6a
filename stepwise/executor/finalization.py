"""Finalization: make a step durable, then close its ticket.

Sequence for one step:

1. Rotate the implementation log if it is over threshold.
2. Prepend the step's log entry.
3. Commit the change set together with the log (and the archive, if the log
   was rotated). On failure the log is restored, nothing is committed, no
   ticket is touched, and PersistenceError halts the run.
4. Close the step's ticket. On failure the commit stays, the record is
   marked needs_reconcile, and ReconciliationRequired halts the run. This is
   never retried: the operator reconciles the ticket against the commit.

Publish runs once per session after its last step: aggregate the step
summaries, push the branch, open a pull request. A failed push halts. A
failed pull request leaves the pushed branch in place and can be retried.
"""

import logging
import shutil
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from stepwise.errors import PersistenceError, PublishError, ReconciliationRequired
from stepwise.executor.impl_log import ImplementationLog, LogEntry
from stepwise.executor.schemas import FinalizationRecord, PublishResult, TicketStatus
from stepwise.persistence.git import GitError
from stepwise.sessions.schemas import Session, StepSummary

logger = logging.getLogger(__name__)


@runtime_checkable
class ChangePersister(Protocol):
    def persist(self, files: list[str], message: str) -> str:
        """Commit files atomically and return the commit id. Raises GitError."""
        ...


@runtime_checkable
class TicketTracker(Protocol):
    def close(self, ticket_id: str, reason: str = "") -> None:
        """Close a ticket. Raises TicketCloseError."""
        ...


@runtime_checkable
class Publisher(Protocol):
    def push(self, branch: str) -> None: ...

    def open_request(self, branch: str, title: str, body: str): ...


def build_commit_message(
    step: str,
    summary: str,
    plan_id: str,
    session_id: Optional[str] = None,
    ticket_id: Optional[str] = None,
) -> str:
    first_line = (summary.strip().splitlines() or [""])[0].strip()
    subject = f"{step}: {first_line}" if first_line else f"{step}: complete step"
    trailers = [f"Plan: {plan_id}"]
    if session_id:
        trailers.append(f"Session: {session_id}")
    if ticket_id:
        trailers.append(f"Ticket: {ticket_id}")
    return subject[:72] + "\n\n" + "\n".join(trailers) + "\n"


class FinalizationCoordinator:
    """Log update, commit and ticket closure as one logical unit."""

    def __init__(
        self,
        log: ImplementationLog,
        persister: ChangePersister,
        tickets: Optional[TicketTracker] = None,
    ):
        self.log = log
        self.persister = persister
        self.tickets = tickets

    def _snapshot_log(self) -> Optional[str]:
        return self.log.path.read_text() if self.log.path.exists() else None

    def _restore_log(self, snapshot: Optional[str], archived: Optional[Path]) -> None:
        if archived is not None and archived.exists():
            shutil.move(str(archived), str(self.log.path))
        elif snapshot is None:
            self.log.path.unlink(missing_ok=True)
        else:
            self.log.path.write_text(snapshot)

    def finalize(
        self,
        step: str,
        files_to_persist: list[str],
        ticket_id: Optional[str],
        *,
        summary: str,
        plan_id: str,
        session_id: Optional[str] = None,
        close_ticket: bool = True,
    ) -> FinalizationRecord:
        record = FinalizationRecord(step=step, ticket_id=ticket_id)

        snapshot = self._snapshot_log()
        rotation = self.log.rotate()
        record.log_rotated = rotation.rotated
        if rotation.archived_path is not None:
            record.archived_log = str(rotation.archived_path)

        self.log.prepend(
            LogEntry(
                step=step,
                plan_id=plan_id,
                summary=summary,
                ticket_id=ticket_id,
                session_id=session_id,
                files=list(files_to_persist),
            )
        )

        files = list(dict.fromkeys(files_to_persist))
        files.append(str(self.log.path))
        if rotation.archived_path is not None:
            files.append(str(rotation.archived_path))
        record.files_persisted = files

        message = build_commit_message(step, summary, plan_id, session_id, ticket_id)
        try:
            record.commit_id = self.persister.persist(files, message)
        except (GitError, OSError) as e:
            self._restore_log(snapshot, rotation.archived_path)
            record.error = str(e)
            logger.error(f"[{step}] Commit failed; ticket left open: {e}")
            raise PersistenceError(f"Commit failed for {step}: {e}", phase="finalize", step=step)

        logger.info(f"[{step}] Committed {record.commit_id}")

        if not ticket_id or self.tickets is None:
            record.ticket_status = TicketStatus.SKIPPED
            return record
        if not close_ticket:
            logger.info(f"[{step}] Ticket {ticket_id} was closed by an earlier run; not closing again")
            record.ticket_status = TicketStatus.SKIPPED
            return record

        try:
            self.tickets.close(ticket_id, reason=f"Completed {step} in {record.commit_id}")
        except Exception as e:
            record.ticket_status = TicketStatus.FAILED
            record.needs_reconcile = True
            record.error = str(e)
            logger.error(
                f"[{step}] Commit {record.commit_id} landed but ticket {ticket_id} "
                f"could not be closed: {e}"
            )
            raise ReconciliationRequired(
                f"Commit {record.commit_id} for {step} landed but ticket {ticket_id} "
                f"could not be closed: {e}",
                step=step,
                record=record,
            )

        record.ticket_status = TicketStatus.CLOSED
        return record


def render_publish_body(session: Session) -> str:
    """Aggregate every step summary of a session into one markdown document."""
    lines = [
        f"## {session.plan_id}",
        "",
        f"Session `{session.session_id}` completed {len(session.step_summaries)} step(s).",
        "",
    ]
    for s in session.step_summaries:
        heading = f"### {s.step}"
        if s.commit_id:
            heading += f" ({s.commit_id[:12]})"
        lines.append(heading)
        lines.append("")
        if s.ticket_id:
            lines.append(f"Ticket: {s.ticket_id}")
            lines.append("")
        lines.append(s.summary.strip() or "(no summary)")
        lines.append("")
    return "\n".join(lines)


def publish(session: Session, publisher: Publisher, summary_path: Optional[Path] = None) -> PublishResult:
    """Push the session branch and open a pull request for it.

    A branch that an earlier attempt already pushed is not pushed again.
    Raises PublishError when the push fails; a failed pull request is
    reported in the result with pushed=True.
    """
    if not session.branch:
        raise PublishError(f"Session {session.session_id} has no branch to publish")

    body = render_publish_body(session)
    if summary_path is not None:
        summary_path.parent.mkdir(parents=True, exist_ok=True)
        summary_path.write_text(body)

    already_pushed = session.publish is not None and session.publish.pushed
    if not already_pushed:
        try:
            publisher.push(session.branch)
        except (GitError, OSError) as e:
            result = PublishResult(pushed=False, error=str(e))
            raise PublishError(f"Push of {session.branch} failed: {e}", result=result)

    title = f"{session.plan_id}: {len(session.step_summaries)} step(s) from {session.session_id}"
    pr = publisher.open_request(session.branch, title, body)
    if not pr.success:
        logger.warning(f"Branch {session.branch} is pushed but the pull request was not opened: {pr.message}")
        return PublishResult(pushed=True, request_opened=False, error=pr.message)

    ref = pr.url or (f"#{pr.number}" if pr.number else None)
    return PublishResult(pushed=True, request_opened=True, request_ref=ref)


def summary_for(step: str, record: FinalizationRecord, summary: str) -> StepSummary:
    return StepSummary(step=step, commit_id=record.commit_id, summary=summary, ticket_id=record.ticket_id)
