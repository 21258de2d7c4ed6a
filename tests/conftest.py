import json
from pathlib import Path
from typing import Optional

import pytest
import yaml

from stepwise.config import PublishSettings, Settings, TicketSettings
from stepwise.persistence.git import GitError
from stepwise.persistence.github_client import PullRequestResult
from stepwise.persistence.tickets import TicketCloseError
from stepwise.sessions.store import SessionStore


def strategy_response(touch=("src/app.py",), approach="Update the app module") -> dict:
    return {
        "approach": approach,
        "expected_touch_set": list(touch),
        "ordered_substeps": ["edit", "test"],
        "verification_plan": "run the unit tests",
    }


def execution_response(modified=("src/app.py",), created=(), summary="Changed the app") -> dict:
    return {
        "success": True,
        "files_created": list(created),
        "files_modified": list(modified),
        "tests_run": 3,
        "tests_passed": 3,
        "drift_assessment": {"severity": "none"},
        "summary": summary,
    }


def review_response(recommendation="APPROVE", failing=()) -> dict:
    checks = [{"check": "tests pass", "passed": True}]
    checks += [{"check": name, "passed": False, "detail": "not done"} for name in failing]
    return {"conformance_checks": checks, "issues": [], "recommendation": recommendation}


class FakeCollaborator:
    """Scripted collaborator. Review responses are consumed in order; the last repeats."""

    def __init__(self, strategy=None, execution=None, reviews=None):
        self.strategy = strategy if strategy is not None else strategy_response()
        self.execution = execution if execution is not None else execution_response()
        self.reviews = list(reviews) if reviews is not None else [review_response()]
        self.calls: list[tuple[str, object]] = []

    def _count(self, phase: str) -> int:
        return sum(1 for p, _ in self.calls if p == phase)

    def strategize(self, request):
        self.calls.append(("strategize", request))
        return self.strategy

    def execute(self, request):
        self.calls.append(("execute", request))
        return self.execution

    def review(self, request):
        self.calls.append(("review", request))
        idx = min(self._count("review") - 1, len(self.reviews) - 1)
        return self.reviews[idx]


class FakePersister:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.commits: list[tuple[list[str], str]] = []

    def persist(self, files, message):
        if self.fail:
            raise GitError(["commit"], 1, "disk full")
        self.commits.append((list(files), message))
        return f"{len(self.commits):040x}"


class FakeTickets:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.closed: list[str] = []

    def close(self, ticket_id, reason=""):
        if self.fail:
            raise TicketCloseError(f"bd close {ticket_id} exited 1: tracker offline")
        self.closed.append(ticket_id)


class FakePublisher:
    def __init__(self, push_error: Optional[Exception] = None, pr: Optional[PullRequestResult] = None):
        self.push_error = push_error
        self.pr = pr or PullRequestResult(success=True, number=7, url="https://github.com/acme/app/pull/7")
        self.pushed: list[str] = []
        self.opened: list[tuple[str, str, str]] = []

    def push(self, branch):
        if self.push_error is not None:
            raise self.push_error
        self.pushed.append(branch)

    def open_request(self, branch, title, body):
        self.opened.append((branch, title, body))
        return self.pr


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        project_root=tmp_path,
        tickets=TicketSettings(enabled=False),
        publish=PublishSettings(enabled=False),
    )


@pytest.fixture
def store(settings: Settings) -> SessionStore:
    return SessionStore(settings.resolved_state_dir())


@pytest.fixture
def write_plan(settings: Settings):
    """Write a plan document into the plans directory and return its path."""

    def _write(plan_id: str, steps: list[dict], fmt: str = "yaml", title: str = "") -> Path:
        plans_dir = settings.resolved_plans_dir()
        plans_dir.mkdir(parents=True, exist_ok=True)
        data = {"plan_id": plan_id, "title": title or plan_id, "steps": steps}
        path = plans_dir / f"{plan_id}.{fmt}"
        if fmt == "json":
            path.write_text(json.dumps(data))
        else:
            path.write_text(yaml.safe_dump(data))
        return path

    return _write


@pytest.fixture
def two_step_plan(write_plan) -> Path:
    return write_plan(
        "demo",
        [
            {"anchor": "step-1", "title": "First", "artifacts": ["src/app.py"], "ticket_id": "T-1"},
            {"anchor": "step-2", "title": "Second", "depends_on": ["step-1"], "artifacts": ["src/app.py"]},
        ],
    )
