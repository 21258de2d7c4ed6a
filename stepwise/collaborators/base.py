"""Collaborator interface and response validation.

A collaborator provides one method per phase. Each method receives the
typed request and returns the raw response exactly as produced: a JSON
string, or an already-decoded dict. The engine keeps the raw value for the
artifacts directory and validates it with ``parse_response``; the
collaborator never decides whether its own output is acceptable.
"""

import json
import logging
from typing import Any, Protocol, TypeVar, runtime_checkable

from pydantic import BaseModel, ValidationError

from stepwise.errors import ContractViolation
from stepwise.executor.schemas import ExecutionRequest, ReviewRequest, StrategyRequest

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@runtime_checkable
class Collaborator(Protocol):
    """Strategist, executor and reviewer capabilities."""

    def strategize(self, request: StrategyRequest) -> Any: ...

    def execute(self, request: ExecutionRequest) -> Any: ...

    def review(self, request: ReviewRequest) -> Any: ...


def parse_llm_json_response(raw_text: str) -> dict:
    """Parse JSON from a collaborator response, handling markdown code fences.

    Model-backed collaborators sometimes wrap JSON in ```json ... ``` fences
    despite being told not to. Those fences are stripped before parsing.

    Raises:
        json.JSONDecodeError: If the text cannot be parsed as JSON
    """
    content = raw_text.strip()

    # Strip leading markdown fence (```json or ```)
    if content.startswith("```"):
        content = content.split("\n", 1)[1] if "\n" in content else content[3:]

    # Strip trailing fence
    if content.endswith("```"):
        content = content.rsplit("```", 1)[0]

    content = content.strip()
    return json.loads(content)


def _error_field(error: ValidationError) -> str:
    first = error.errors()[0]
    return ".".join(str(part) for part in first["loc"]) or "<root>"


def parse_response(raw: Any, model: type[ModelT], *, phase: str, step: str) -> ModelT:
    """Validate a raw collaborator response against its contract.

    Raises ContractViolation naming the first offending field. The raw value
    travels with the exception unchanged.
    """
    data = raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
        data = raw
    if isinstance(raw, str):
        try:
            data = parse_llm_json_response(raw)
        except json.JSONDecodeError as e:
            raise ContractViolation(
                f"{phase} response for {step} is not valid JSON: {e}",
                phase=phase,
                step=step,
                field="<json>",
                raw=raw,
            )

    if not isinstance(data, dict):
        raise ContractViolation(
            f"{phase} response for {step} must be a JSON object, got {type(data).__name__}",
            phase=phase,
            step=step,
            field="<root>",
            raw=raw,
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        field = _error_field(e)
        first = e.errors()[0]
        raise ContractViolation(
            f"{phase} response for {step} violates its contract at '{field}': {first['msg']}",
            phase=phase,
            step=step,
            field=field,
            raw=raw,
        )
