"""Model-backed collaborator using Claude through the Anthropic SDK.

Each phase is one prompt asking for a single JSON object:

- strategize: the strategy contract, returned as the model wrote it.
- execute: the model returns whole-file edits. The collaborator writes them
  into the workspace, derives files_created/files_modified from what it
  actually wrote, attaches its own drift assessment, and returns the
  completed result. Output that cannot be parsed is returned verbatim so the
  engine can capture it as a contract violation.
- review: the review contract, returned as the model wrote it.

Requires ANTHROPIC_API_KEY.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import anthropic

from stepwise.collaborators.backends import AnthropicBackend, ModelBackend
from stepwise.collaborators.base import parse_llm_json_response
from stepwise.errors import CollaboratorError, CollaboratorTimeout
from stepwise.executor.drift import DriftClassifier
from stepwise.executor.schemas import ExecutionRequest, ReviewRequest, StrategyRequest

logger = logging.getLogger(__name__)

STRATEGIST_PROMPT = """You plan the implementation of one step of a software plan.

Respond with a single JSON object and nothing else:
{
  "approach": "how you will implement the step",
  "expected_touch_set": ["relative/path/of/every/file/you/expect/to/change"],
  "ordered_substeps": ["..."],
  "verification_plan": "how the result will be verified",
  "risks": ["..."]
}"""

EXECUTOR_PROMPT = """You implement one step of a software plan following the given strategy.

Respond with a single JSON object and nothing else:
{
  "success": true,
  "halted_for_drift": false,
  "edits": [{"path": "relative/path", "content": "complete new file content"}],
  "tests_run": 0,
  "tests_passed": 0,
  "summary": "one paragraph describing what changed"
}

Only touch files the step needs. If the step cannot be done without touching
files far outside the expected touch set, set "halted_for_drift" to true and
return no edits. If review feedback is included, address every failing check."""

REVIEWER_PROMPT = """You review the implementation of one step of a software plan.

Check the execution result against the step's verification criteria and the
strategy. Respond with a single JSON object and nothing else:
{
  "conformance_checks": [{"check": "name", "passed": true, "detail": "..."}],
  "issues": ["..."],
  "recommendation": "APPROVE" | "REVISE" | "ESCALATE",
  "summary": "..."
}

Use REVISE only when failing checks or issues name something the implementer
can fix. Use ESCALATE when a human decision is needed."""


class AnthropicCollaborator:
    """Strategist, executor and reviewer backed by one Claude model."""

    def __init__(
        self,
        workspace: Path,
        backend: Optional[ModelBackend] = None,
        max_tokens: int = 16_000,
        timeout: Optional[float] = None,
    ):
        self.workspace = Path(workspace).resolve()
        self.backend = backend or AnthropicBackend()
        self.max_tokens = max_tokens
        self.timeout = timeout

    def _call(self, phase: str, system_prompt: str, payload: dict[str, Any], step: str) -> str:
        label = f"{step}:{phase}"
        try:
            result = self.backend.execute_sync(
                system_prompt,
                json.dumps(payload, indent=2, default=str),
                max_tokens=self.max_tokens,
                timeout=self.timeout,
                label=label,
            )
        except anthropic.APITimeoutError as e:
            raise CollaboratorTimeout(f"{phase} call timed out: {e}", phase=phase, step=step)
        except anthropic.APIError as e:
            raise CollaboratorError(f"{phase} call failed: {e}", phase=phase, step=step)
        except RuntimeError as e:
            raise CollaboratorError(str(e), phase=phase, step=step)
        return result.content

    def _read_context(self, paths: list[str]) -> dict[str, str]:
        files = {}
        for rel in paths:
            path = self._safe_path(rel)
            if path is not None and path.is_file():
                files[rel] = path.read_text(errors="replace")
        return files

    def _safe_path(self, rel: str) -> Optional[Path]:
        path = (self.workspace / rel).resolve()
        if path != self.workspace and self.workspace not in path.parents:
            return None
        return path

    def strategize(self, request: StrategyRequest) -> str:
        payload = request.model_dump(mode="json")
        payload["existing_files"] = self._read_context(request.artifacts)
        return self._call("strategize", STRATEGIST_PROMPT, payload, request.step)

    def execute(self, request: ExecutionRequest) -> Any:
        payload = request.model_dump(mode="json")
        payload["existing_files"] = self._read_context(request.strategy.expected_touch_set)
        if request.feedback is not None:
            payload["review_feedback"] = request.feedback.as_text()
        raw = self._call("execute", EXECUTOR_PROMPT, payload, request.step)

        try:
            data = parse_llm_json_response(raw)
        except json.JSONDecodeError:
            return raw
        edits = data.get("edits") if isinstance(data, dict) else None
        if not isinstance(edits, list):
            return raw

        created, modified = [], []
        for edit in edits:
            if not isinstance(edit, dict) or "path" not in edit or "content" not in edit:
                return raw
            rel = str(edit["path"])
            path = self._safe_path(rel)
            if path is None:
                logger.warning(f"[{request.step}] Ignoring edit outside workspace: {rel}")
                continue
            existed = path.exists()
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(edit["content"])
            (modified if existed else created).append(rel)

        assessment = DriftClassifier().classify(
            request.strategy.expected_touch_set,
            created + modified,
            approach=request.strategy.approach,
        )
        data.pop("edits")
        data["files_created"] = created
        data["files_modified"] = modified
        data["drift_assessment"] = assessment.model_dump(mode="json")
        logger.info(
            f"[{request.step}] Applied {len(created)} new and {len(modified)} modified file(s)"
        )
        return data

    def review(self, request: ReviewRequest) -> str:
        payload = request.model_dump(mode="json")
        payload["changed_files"] = self._read_context(request.execution.changed_files)
        return self._call("review", REVIEWER_PROMPT, payload, request.step)
