import json
import time
from datetime import timedelta

import pytest

from conftest import (
    FakeCollaborator,
    FakePersister,
    FakePublisher,
    FakeTickets,
    execution_response,
    review_response,
    strategy_response,
)
from stepwise.errors import PreconditionError
from stepwise.executor.cancellation import request_cancellation
from stepwise.executor.impl_log import ImplementationLog
from stepwise.executor.step_resolver import SelectionIntent
from stepwise.executor.workflow_runner import Checkpoints, RunOptions, WorkflowRunner
from stepwise.persistence.github_client import PullRequestResult
from stepwise.sessions.schemas import Failed, Phase, SessionStatus, StepSummary


class Harness:
    def __init__(self, settings, store, collaborator=None, persister=None, tickets=None, publisher=None, checkpoints=None):
        self.collaborator = collaborator or FakeCollaborator()
        self.persister = persister or FakePersister()
        self.tickets = tickets or FakeTickets()
        self.publisher = publisher or FakePublisher()
        self.store = store
        self.runner = WorkflowRunner(
            settings,
            store,
            collaborator_factory=lambda ws: self.collaborator,
            persister_factory=lambda ws: self.persister,
            tickets_factory=lambda ws: self.tickets,
            publisher_factory=lambda ws: self.publisher,
            checkpoints=checkpoints,
        )

    def run(self, intent=None, **options):
        return self.runner.run("demo", RunOptions(intent=intent or SelectionIntent.remaining(), **options))


@pytest.fixture
def harness(settings, store, two_step_plan):
    def _make(**kwargs):
        return Harness(settings, store, **kwargs)

    return _make


def test_runs_remaining_steps_to_completion(harness, settings, store):
    h = harness()

    result = h.run()

    assert result.exit_code == 0
    assert result.steps_completed == ["step-1", "step-2"]
    session = store.load(result.session_id)
    assert session.status == SessionStatus.COMPLETED
    assert session.steps_remaining == []
    assert [s.step for s in session.step_summaries] == ["step-1", "step-2"]
    assert h.tickets.closed == ["T-1"]
    assert len(h.persister.commits) == 2

    log = ImplementationLog(settings.log_path_for(settings.project_root))
    text = log.path.read_text()
    assert log.entry_count() == 2
    assert text.index("## step-2") < text.index("## step-1")


def test_phase_responses_are_kept_as_artifacts(harness, store):
    result = harness().run(intent=SelectionIntent.next())

    step_dir = store.artifacts_dir(result.session_id) / "step-1"
    names = sorted(p.name for p in step_dir.iterdir())
    assert names == [
        "01-strategize.json",
        "02-execute.json",
        "03-drift.json",
        "04-review.json",
        "05-review-outcome.json",
        "06-finalize.json",
    ]
    strategize = json.loads((step_dir / "01-strategize.json").read_text())
    assert strategize["response"]["expected_touch_set"] == ["src/app.py"]
    assert strategize["request"]["step"] == "step-1"


def test_next_then_remaining_resumes(harness, store):
    h = harness()
    first = h.run(intent=SelectionIntent.next())
    second = h.run()

    assert first.steps_completed == ["step-1"]
    assert second.steps_completed == ["step-2"]
    assert store.completed_steps("demo") == {"step-1", "step-2"}


def test_nothing_left_to_run(harness, store):
    h = harness()
    h.run()

    again = h.run()

    assert again.exit_code == 0
    assert again.session_id is None
    assert again.message == "All steps are already complete."
    assert len(store.list_all()) == 1


def test_replay_all_recommits_without_closing_tickets_again(harness):
    h = harness()
    h.run()

    replay = h.run(intent=SelectionIntent.all())

    assert replay.exit_code == 0
    assert replay.steps_completed == ["step-1", "step-2"]
    assert len(h.persister.commits) == 4
    assert h.tickets.closed == ["T-1"]


def test_missing_plan_is_a_precondition_failure(settings, store):
    runner = WorkflowRunner(settings, store, persister_factory=lambda ws: FakePersister())
    result = runner.run("ghost")
    assert result.exit_code == 2
    assert store.list_all() == []


def test_unmet_dependency_creates_no_session(harness, store):
    result = harness().run(intent=SelectionIntent.specific("step-2"))

    assert result.exit_code == 2
    assert result.error_code == "selection_rejected"
    assert "step-1" in result.message
    assert store.list_all() == []


def test_ambiguous_selection_asks_for_clarification(harness, store):
    result = harness().run(intent=SelectionIntent.ambiguous("make it nice"))
    assert result.exit_code == 2
    assert result.error_code == "needs_clarification"
    assert store.list_all() == []


def test_live_session_aborts_unless_forced(harness, store):
    other = store.create("demo", ["step-1"], "/elsewhere")

    aborted = harness().run()
    assert aborted.exit_code == 5
    assert aborted.conflicts.conflict.session_id == other.session_id
    assert len(store.list_all()) == 1

    forced = harness(checkpoints=Checkpoints(force=True)).run()
    assert forced.exit_code == 0
    assert len(store.list_all()) == 2


def test_abandoned_session_does_not_block(harness, store):
    stale = store.create("demo", ["step-1"], "/elsewhere")
    stale.last_updated_at = stale.last_updated_at - timedelta(minutes=90)
    store.save(stale)

    result = harness().run()

    assert result.exit_code == 0
    assert [s.session_id for s in result.conflicts.abandoned] == [stale.session_id]


def test_contract_violation_is_captured_verbatim(harness, store):
    raw = '{"approach": "do it"}'
    h = harness(collaborator=FakeCollaborator(strategy=raw))

    result = h.run()

    assert result.exit_code == 1
    assert result.error_code == "contract_violation"
    session = store.load(result.session_id)
    assert isinstance(session.state, Failed)
    assert session.state.at_step == "step-1"
    assert "expected_touch_set" in session.state.reason

    payload = json.loads(open(result.error_artifact).read())
    assert payload["raw_response"] == raw
    assert payload["field"] == "expected_touch_set"
    assert payload["phase"] == "strategize"
    assert h.persister.commits == []


def test_malformed_json_is_a_contract_violation(harness):
    result = harness(collaborator=FakeCollaborator(execution="Sure! Here is what I did...")).run()
    payload = json.loads(open(result.error_artifact).read())
    assert result.error_code == "contract_violation"
    assert payload["field"] == "<json>"
    assert payload["raw_response"] == "Sure! Here is what I did..."


def test_missing_drift_assessment_names_the_field(harness):
    execution = execution_response()
    del execution["drift_assessment"]
    result = harness(collaborator=FakeCollaborator(execution=execution)).run()
    payload = json.loads(open(result.error_artifact).read())
    assert payload["field"] == "drift_assessment"


def test_drift_above_tolerance_halts(harness, store):
    execution = execution_response(modified=["src/app.py", "billing/invoice.py"])
    h = harness(collaborator=FakeCollaborator(execution=execution))

    result = h.run()

    assert result.exit_code == 4
    assert result.error_code == "drift_halt"
    session = store.load(result.session_id)
    assert session.state.last_phase == Phase.EXECUTE
    assert h.persister.commits == []


def test_confirmed_drift_continues(harness):
    execution = execution_response(modified=["src/app.py", "billing/invoice.py"])
    result = harness(collaborator=FakeCollaborator(execution=execution), checkpoints=Checkpoints(force=True)).run()
    assert result.exit_code == 0


def test_drift_within_tolerance_continues(harness):
    execution = execution_response(modified=["src/app.py", "src/util.py"])
    result = harness(collaborator=FakeCollaborator(execution=execution)).run()
    assert result.exit_code == 0


def test_executor_drift_halt(harness):
    execution = execution_response()
    execution["halted_for_drift"] = True
    execution["drift_assessment"] = {"severity": "major", "note": "needs a schema change"}
    result = harness(collaborator=FakeCollaborator(execution=execution)).run()
    assert result.exit_code == 4


def test_executor_failure(harness):
    execution = execution_response(summary="could not compile")
    execution["success"] = False
    result = harness(collaborator=FakeCollaborator(execution=execution)).run()
    assert result.exit_code == 1
    assert result.error_code == "collaborator_error"


def test_revision_then_approval(harness):
    collaborator = FakeCollaborator(reviews=[review_response("REVISE", failing=["has tests"]), review_response()])
    result = harness(collaborator=collaborator).run(intent=SelectionIntent.next())

    assert result.exit_code == 0
    executions = [req for phase, req in collaborator.calls if phase == "execute"]
    assert len(executions) == 2
    assert executions[1].feedback.failing_checks[0].check == "has tests"
    assert executions[1].attempt == 2


def test_review_escalation_after_retry_cap(harness, store):
    collaborator = FakeCollaborator(reviews=[review_response("REVISE", failing=["has tests"])])
    h = harness(collaborator=collaborator)

    result = h.run()

    assert result.exit_code == 3
    assert result.error_code == "review_escalated"
    assert sum(1 for phase, _ in collaborator.calls if phase == "review") == 4
    assert h.persister.commits == []


def test_reviewer_escalation(harness):
    collaborator = FakeCollaborator(reviews=[review_response("ESCALATE", failing=["architecture"])])
    result = harness(collaborator=collaborator).run()
    assert result.exit_code == 3
    assert "architecture" in result.message


def test_collaborator_timeout(harness, store):
    class Slow(FakeCollaborator):
        def strategize(self, request):
            time.sleep(0.5)
            return super().strategize(request)

    result = harness(collaborator=Slow()).run(timeout=0.05)

    assert result.exit_code == 1
    assert result.error_code == "collaborator_timeout"
    assert store.load(result.session_id).status == SessionStatus.FAILED


def test_collaborator_exception(harness):
    class Broken(FakeCollaborator):
        def review(self, request):
            raise ConnectionError("socket closed")

    result = harness(collaborator=Broken()).run()
    assert result.error_code == "collaborator_error"
    assert "ConnectionError" in result.message


def test_cancellation_stops_at_next_phase_boundary(harness, store):
    class Cancelling(FakeCollaborator):
        def strategize(self, request):
            [live] = store.list_all(status=SessionStatus.IN_PROGRESS)
            request_cancellation(live.session_id, store)
            return super().strategize(request)

    h = harness(collaborator=Cancelling())
    result = h.run()

    assert result.exit_code == 1
    assert result.error_code == "cancelled"
    assert not any(phase == "execute" for phase, _ in h.collaborator.calls)
    assert not store.cancel_requested(result.session_id)


def test_cancellation_between_steps_records_finalized_step(harness, store):
    class CancelOnClose(FakeTickets):
        def close(self, ticket_id, reason=""):
            super().close(ticket_id, reason)
            [live] = store.list_all(status=SessionStatus.IN_PROGRESS)
            request_cancellation(live.session_id, store)

    h = harness(tickets=CancelOnClose())
    result = h.run()

    assert result.error_code == "cancelled"
    state = store.load(result.session_id).state
    assert state.at_step == "step-2"
    assert state.last_phase == Phase.FINALIZE
    assert state.last_completed_step == "step-1"


def test_undecodable_response_fails_the_session(harness, store):
    h = harness(collaborator=FakeCollaborator(strategy=b"\xff\xfe not utf8"))
    result = h.run()

    assert result.exit_code == 1
    assert result.error_code == "contract_violation"
    assert store.load(result.session_id).status == SessionStatus.FAILED
    assert store.list_all(status=SessionStatus.IN_PROGRESS) == []


def test_unexpected_error_fails_the_session(harness, store):
    class Exploding(FakePersister):
        def persist(self, files, message):
            raise ValueError("index is corrupt")

    h = harness(persister=Exploding())
    result = h.run()

    assert result.exit_code == 1
    assert "ValueError: index is corrupt" in result.message
    session = store.load(result.session_id)
    assert isinstance(session.state, Failed)
    assert session.state.at_step == "step-1"
    assert session.state.last_phase == Phase.REVIEW
    payload = json.loads(open(result.error_artifact).read())
    assert payload["step"] == "step-1"


def test_commit_failure_halts_before_ticket(harness, store):
    h = harness(persister=FakePersister(fail=True))
    result = h.run()

    assert result.error_code == "persistence_failed"
    assert h.tickets.closed == []
    assert store.load(result.session_id).steps_completed == []


def test_ticket_failure_needs_reconcile(harness, store):
    h = harness(tickets=FakeTickets(fail=True))
    result = h.run()

    assert result.exit_code == 1
    assert result.error_code == "needs_reconcile"
    state = store.load(result.session_id).state
    assert state.needs_reconcile
    assert state.commit_id is not None
    assert state.ticket_id == "T-1"


def test_manual_commit_policy_declined(harness):
    class Decline(Checkpoints):
        def confirm_commit(self, step, outcome):
            return False

    h = harness(checkpoints=Decline())
    result = h.run(commit_policy="manual")

    assert result.error_code == "commit_declined"
    assert h.persister.commits == []


def test_strategy_touch_set_drives_drift(harness):
    collaborator = FakeCollaborator(
        strategy=strategy_response(touch=["src/app.py", "billing/invoice.py"]),
        execution=execution_response(modified=["src/app.py", "billing/invoice.py"]),
    )
    assert harness(collaborator=collaborator).run().exit_code == 0


def _completed_session(store, branch="stepwise/demo"):
    session = store.create("demo", ["step-1"], "/work", branch=branch)
    session.complete_step("step-1", StepSummary(step="step-1", commit_id="b" * 40, summary="Did it"))
    store.save(session)
    return session


def test_publish_session(harness, store):
    session = _completed_session(store)
    h = harness()

    result = h.runner.publish_session(session.session_id)

    assert result.exit_code == 0
    assert h.publisher.pushed == ["stepwise/demo"]
    saved = store.load(session.session_id)
    assert saved.publish.request_opened
    assert saved.publish.request_ref.endswith("/pull/7")


def test_publish_request_failure_is_retryable(harness, store):
    session = _completed_session(store)
    failing = harness(publisher=FakePublisher(pr=PullRequestResult(success=False, message="rate limited")))

    first = failing.runner.publish_session(session.session_id)
    assert first.exit_code == 1
    assert f"stepwise publish {session.session_id}" in first.message
    assert store.load(session.session_id).status == SessionStatus.COMPLETED

    retry = harness()
    second = retry.runner.publish_session(session.session_id)
    assert second.exit_code == 0
    assert retry.publisher.pushed == []


def test_publish_requires_completed_session(harness, store):
    session = store.create("demo", ["step-1"], "/work", branch="x")
    with pytest.raises(PreconditionError):
        harness().runner.publish_session(session.session_id)
