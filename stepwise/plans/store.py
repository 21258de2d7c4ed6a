"""File-based plan store.

Loads plan documents (YAML or JSON) from a directory and validates their
structure before any run can use them:

    E006  duplicate step anchor
    E010  dependency references an unknown anchor
    E011  dependency cycle
"""

import json
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError

from stepwise.errors import PlanValidationError, PreconditionError
from stepwise.plans.schemas import Plan, PlanSummary

logger = logging.getLogger(__name__)

PLAN_SUFFIXES = (".yaml", ".yml", ".json")


def validate_plan(plan: Plan) -> None:
    """Raise PlanValidationError if the plan is structurally invalid."""
    seen: set[str] = set()
    for step in plan.steps:
        if step.anchor in seen:
            raise PlanValidationError(
                f"Duplicate step anchor '{step.anchor}' in plan '{plan.plan_id}'",
                error_code="E006",
            )
        seen.add(step.anchor)

    for step in plan.steps:
        for dep in step.depends_on:
            if dep not in seen:
                raise PlanValidationError(
                    f"Step '{step.anchor}' depends on unknown step '{dep}'",
                    error_code="E010",
                )

    # Kahn's algorithm: whatever never reaches in-degree zero sits on a cycle
    in_degree = {s.anchor: len(set(s.depends_on)) for s in plan.steps}
    dependents: dict[str, list[str]] = {s.anchor: [] for s in plan.steps}
    for step in plan.steps:
        for dep in set(step.depends_on):
            dependents[dep].append(step.anchor)

    ready = [a for a, d in in_degree.items() if d == 0]
    visited = 0
    while ready:
        anchor = ready.pop()
        visited += 1
        for child in dependents[anchor]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if visited != len(plan.steps):
        stuck = sorted(a for a, d in in_degree.items() if d > 0)
        raise PlanValidationError(
            f"Dependency cycle among steps: {', '.join(stuck)}",
            error_code="E011",
        )


def load_plan_file(path: Path) -> Plan:
    """Load and validate a single plan document."""
    path = Path(path)
    if not path.exists():
        raise PreconditionError(f"Plan file not found: {path}")

    try:
        with open(path, "r") as f:
            if path.suffix == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PlanValidationError(f"Cannot parse {path}: {e}", error_code="E001")

    if not isinstance(data, dict):
        raise PlanValidationError(f"{path} must contain a mapping", error_code="E001")
    data.setdefault("plan_id", path.stem)

    try:
        plan = Plan.model_validate(data)
    except ValidationError as e:
        raise PlanValidationError(f"Invalid plan {path}: {e}", error_code="E001")

    plan.source_path = str(path)
    validate_plan(plan)
    return plan


class PlanStore:
    """Registry of plan documents in a directory.

    Plans are addressed either by plan_id or by a path to the document.
    """

    def __init__(self, plans_dir: Path):
        self.plans_dir = Path(plans_dir)
        self._plans: dict[str, Plan] = {}
        self._loaded = False

    def load(self) -> None:
        """Load all plan documents in the directory.

        Invalid documents are logged and skipped here; loading one explicitly
        through get() raises instead.
        """
        if self._loaded:
            return

        if self.plans_dir.exists():
            for path in sorted(self.plans_dir.iterdir()):
                if path.suffix not in PLAN_SUFFIXES:
                    continue
                try:
                    plan = load_plan_file(path)
                except PreconditionError as e:
                    logger.error(f"Failed to load plan {path}: {e}")
                    continue
                self._plans[plan.plan_id] = plan

        self._loaded = True
        logger.debug(f"Loaded {len(self._plans)} plans from {self.plans_dir}")

    def get(self, ref: str) -> Plan:
        """Resolve a plan by id or path. Raises PreconditionError if missing."""
        candidate = Path(ref)
        if candidate.suffix in PLAN_SUFFIXES and candidate.exists():
            plan = load_plan_file(candidate)
            self._plans[plan.plan_id] = plan
            return plan

        self.load()
        plan = self._plans.get(ref)
        if plan is None:
            for suffix in PLAN_SUFFIXES:
                path = self.plans_dir / f"{ref}{suffix}"
                if path.exists():
                    plan = load_plan_file(path)
                    self._plans[plan.plan_id] = plan
                    break
        if plan is None:
            raise PreconditionError(f"Plan not found: {ref}")
        return plan

    def find(self, ref: str) -> Optional[Plan]:
        try:
            return self.get(ref)
        except PreconditionError:
            return None

    def list_all(self) -> list[PlanSummary]:
        self.load()
        return [
            PlanSummary(plan_id=p.plan_id, title=p.title, step_count=len(p.steps))
            for p in self._plans.values()
        ]
