"""Command-backed collaborator.

Each phase is an external program configured in ``stepwise.yaml``:

    collaborator:
      kind: command
      commands:
        strategize: "agent-cli strategist"
        execute: "agent-cli coder"
        review: "agent-cli reviewer"

The request is written to the program's stdin as JSON and its stdout is
returned verbatim as the raw response. A non-zero exit status is a
collaborator error; what comes back on stdout is validated by the engine.
"""

import logging
import os
import shlex
import subprocess
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from stepwise.errors import CollaboratorError, CollaboratorTimeout, PreconditionError
from stepwise.executor.schemas import ExecutionRequest, ReviewRequest, StrategyRequest

logger = logging.getLogger(__name__)

PHASES = ("strategize", "execute", "review")


class CommandCollaborator:
    """Runs one external command per phase, JSON in and JSON out."""

    def __init__(
        self,
        commands: dict[str, str],
        workspace: Path,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
    ):
        missing = [p for p in PHASES if not commands.get(p)]
        if missing:
            raise PreconditionError(
                f"No collaborator command configured for phase(s): {', '.join(missing)}"
            )
        self.commands = commands
        self.workspace = Path(workspace)
        self.timeout = timeout
        self.env = env

    def _run(self, phase: str, request: BaseModel) -> str:
        args = shlex.split(self.commands[phase])
        env = dict(os.environ)
        env.update(self.env or {})
        env["STEPWISE_PHASE"] = phase
        step = getattr(request, "step", None)

        logger.debug(f"[{step}] Running {phase} collaborator: {args[0]}")
        try:
            proc = subprocess.run(
                args,
                input=request.model_dump_json(),
                cwd=str(self.workspace),
                env=env,
                text=True,
                capture_output=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            raise CollaboratorTimeout(
                f"{phase} collaborator exceeded {self.timeout}s",
                phase=phase,
                step=step,
            )
        except OSError as e:
            raise CollaboratorError(f"Cannot run {phase} collaborator {args[0]}: {e}", phase=phase, step=step)

        if proc.returncode != 0:
            raise CollaboratorError(
                f"{phase} collaborator exited {proc.returncode}: {proc.stderr.strip()[:500]}",
                phase=phase,
                step=step,
                raw=proc.stdout,
            )
        return proc.stdout

    def strategize(self, request: StrategyRequest) -> str:
        return self._run("strategize", request)

    def execute(self, request: ExecutionRequest) -> str:
        return self._run("execute", request)

    def review(self, request: ReviewRequest) -> str:
        return self._run("review", request)
