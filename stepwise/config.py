"""Runtime configuration.

Settings are read from ``stepwise.yaml`` in the project root (optional) and
then overridden from the environment:

    STEPWISE_STATE_DIR      where sessions, artifacts and the log live
    STEPWISE_PLANS_DIR      where plan documents are loaded from
    STEPWISE_COLLABORATOR   "command" or "anthropic"
    STEPWISE_TIMEOUT        collaborator timeout in seconds
    GITHUB_REPO             owner/repo used when opening pull requests

A missing file means defaults; an invalid file is a precondition failure.
"""

import logging
import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from stepwise.errors import PreconditionError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "stepwise.yaml"


class LogSettings(BaseModel):
    """Implementation log rotation thresholds."""

    filename: str = "implementation-log.md"
    max_entries: int = Field(default=500, ge=1)
    max_bytes: int = Field(default=102_400, ge=1)


class CollaboratorSettings(BaseModel):
    kind: Literal["command", "anthropic"] = "command"
    commands: dict[str, str] = Field(
        default_factory=dict,
        description="Phase name (strategize/execute/review) -> shell command",
    )
    model: str = "claude-sonnet-4-6"
    max_tokens: int = 16_000


class TicketSettings(BaseModel):
    enabled: bool = True
    command: str = Field(default="bd", description="Ticket tracker CLI executable")


class PublishSettings(BaseModel):
    enabled: bool = True
    remote: str = "origin"
    base_branch: str = "main"
    github_repo: Optional[str] = Field(default=None, description="owner/repo")
    token_env: str = "GITHUB_TOKEN"


class Settings(BaseModel):
    """Top-level engine settings."""

    project_root: Path = Field(default_factory=Path.cwd)
    state_dir: Path = Path(".stepwise")
    plans_dir: Optional[Path] = None

    staleness_minutes: int = Field(default=60, ge=1)
    max_review_retries: int = Field(default=3, ge=0)
    collaborator_timeout_seconds: float = Field(default=900.0, gt=0)
    commit_policy: Literal["auto", "manual"] = "auto"
    drift_tolerance: Literal["none", "minor", "moderate", "major"] = Field(
        default="minor",
        description="Highest drift severity accepted without an explicit confirmation",
    )

    log: LogSettings = Field(default_factory=LogSettings)
    collaborator: CollaboratorSettings = Field(default_factory=CollaboratorSettings)
    tickets: TicketSettings = Field(default_factory=TicketSettings)
    publish: PublishSettings = Field(default_factory=PublishSettings)

    def resolved_state_dir(self) -> Path:
        if self.state_dir.is_absolute():
            return self.state_dir
        return self.project_root / self.state_dir

    def resolved_plans_dir(self) -> Path:
        if self.plans_dir is None:
            return self.resolved_state_dir() / "plans"
        if self.plans_dir.is_absolute():
            return self.plans_dir
        return self.project_root / self.plans_dir

    @property
    def log_path(self) -> Path:
        return self.resolved_state_dir() / self.log.filename

    def log_path_for(self, workspace: Path) -> Path:
        """The implementation log is committed with each step, so it lives in the workspace."""
        if self.state_dir.is_absolute():
            return self.log_path
        return Path(workspace) / self.state_dir / self.log.filename


def _apply_env_overrides(data: dict) -> dict:
    if os.environ.get("STEPWISE_STATE_DIR"):
        data["state_dir"] = os.environ["STEPWISE_STATE_DIR"]
    if os.environ.get("STEPWISE_PLANS_DIR"):
        data["plans_dir"] = os.environ["STEPWISE_PLANS_DIR"]
    if os.environ.get("STEPWISE_TIMEOUT"):
        data["collaborator_timeout_seconds"] = os.environ["STEPWISE_TIMEOUT"]
    if os.environ.get("STEPWISE_COLLABORATOR"):
        data.setdefault("collaborator", {})["kind"] = os.environ["STEPWISE_COLLABORATOR"]
    if os.environ.get("GITHUB_REPO"):
        data.setdefault("publish", {})["github_repo"] = os.environ["GITHUB_REPO"]
    return data


def load_settings(project_root: Optional[Path] = None, config_path: Optional[Path] = None) -> Settings:
    """Load settings from YAML plus environment overrides."""
    root = Path(project_root) if project_root else Path.cwd()
    path = Path(config_path) if config_path else root / CONFIG_FILENAME

    data: dict = {}
    if path.exists():
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise PreconditionError(f"Invalid YAML in {path}: {e}")
        if not isinstance(data, dict):
            raise PreconditionError(f"{path} must contain a mapping at the top level")
        logger.debug(f"Loaded settings from {path}")

    data = _apply_env_overrides(dict(data))
    data["project_root"] = root

    try:
        return Settings.model_validate(data)
    except ValidationError as e:
        raise PreconditionError(f"Invalid configuration in {path}: {e}")
