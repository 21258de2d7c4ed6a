import json

import pytest

from stepwise.collaborators.backends import LLMCallResult
from stepwise.collaborators.base import parse_response
from stepwise.collaborators.llm import AnthropicCollaborator
from stepwise.errors import CollaboratorError
from stepwise.executor.schemas import ExecutionRequest, ExecutionResult, Severity, Strategy


class ScriptedBackend:
    model_id = "test-model"

    def __init__(self, content):
        self.content = content
        self.messages = []

    def execute_sync(self, system_prompt, user_message, *, max_tokens, timeout=None, label=""):
        self.messages.append(json.loads(user_message))
        if isinstance(self.content, Exception):
            raise self.content
        return LLMCallResult(content=self.content, model_id=self.model_id, input_tokens=1, output_tokens=1, duration_ms=1)


def _request(tmp_path, touch=("src/app.py",)) -> ExecutionRequest:
    return ExecutionRequest(
        plan_id="demo",
        step="step-1",
        workspace=str(tmp_path),
        strategy=Strategy(approach="edit the app", expected_touch_set=list(touch)),
    )


def test_execute_applies_edits_and_reports_drift(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("old\n")
    backend = ScriptedBackend(json.dumps({
        "success": True,
        "edits": [
            {"path": "src/app.py", "content": "new\n"},
            {"path": "src/helpers.py", "content": "x = 1\n"},
        ],
        "summary": "rewrote app",
    }))

    raw = AnthropicCollaborator(tmp_path, backend=backend).execute(_request(tmp_path))
    result = parse_response(raw, ExecutionResult, phase="execute", step="step-1")

    assert (tmp_path / "src" / "app.py").read_text() == "new\n"
    assert result.files_modified == ["src/app.py"]
    assert result.files_created == ["src/helpers.py"]
    assert result.drift_assessment.severity == Severity.MINOR
    assert backend.messages[0]["existing_files"] == {"src/app.py": "old\n"}


def test_edits_outside_workspace_are_ignored(tmp_path):
    backend = ScriptedBackend(json.dumps({
        "success": True,
        "edits": [{"path": "../escape.txt", "content": "nope"}],
    }))

    raw = AnthropicCollaborator(tmp_path, backend=backend).execute(_request(tmp_path))

    assert not (tmp_path.parent / "escape.txt").exists()
    assert raw["files_created"] == []


def test_unparseable_output_is_returned_verbatim(tmp_path):
    backend = ScriptedBackend("I could not do it")
    raw = AnthropicCollaborator(tmp_path, backend=backend).execute(_request(tmp_path))
    assert raw == "I could not do it"


def test_backend_failure_is_a_collaborator_error(tmp_path):
    backend = ScriptedBackend(RuntimeError("Empty response from LLM"))
    with pytest.raises(CollaboratorError):
        AnthropicCollaborator(tmp_path, backend=backend).execute(_request(tmp_path))
