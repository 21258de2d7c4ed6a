"""File-backed session store.

Layout under the state directory:

    sessions/<session_id>.json            one record per session
    sessions/<session_id>.cancel          cancellation marker (cross-process)
    artifacts/<session_id>/<step>/...     raw collaborator responses per phase
    artifacts/<session_id>/errors/...     captured failures

Records are written atomically (temp file, fsync, rename) so a crash never
leaves a half-written session behind. There are no locks: concurrent runs on
the same plan are detected, not prevented (see conflicts.py).
"""

import json
import logging
import os
import re
import secrets
import shutil
import tempfile
from pathlib import Path
from typing import Iterable, Optional

from pydantic import ValidationError

from stepwise.errors import PersistenceError, SessionNotFound
from stepwise.sessions.schemas import (
    InProgress,
    Session,
    SessionStatus,
    SessionSummary,
    utcnow,
)

logger = logging.getLogger(__name__)


def _slugify(text: str) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", text).strip("-").lower()
    return slug or "plan"


def generate_session_id(plan_id: str) -> str:
    """<plan-slug>-YYYYMMDD-HHMMSS-<6 hex>."""
    stamp = utcnow().strftime("%Y%m%d-%H%M%S")
    return f"{_slugify(plan_id)}-{stamp}-{secrets.token_hex(3)}"


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class SessionStore:
    """Durable record of runs, one JSON document per session."""

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self.sessions_dir = self.state_dir / "sessions"
        self.artifacts_root = self.state_dir / "artifacts"

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.json"

    def create(
        self,
        plan_id: str,
        steps: list[str],
        workspace: str,
        *,
        plan_path: Optional[str] = None,
        ticket_mapping: Optional[dict[str, str]] = None,
        branch: Optional[str] = None,
        base_branch: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Session:
        """Create and persist a new in-progress session for the resolved steps."""
        session = Session(
            session_id=session_id or generate_session_id(plan_id),
            plan_id=plan_id,
            plan_path=plan_path,
            workspace=workspace,
            branch=branch,
            base_branch=base_branch,
            state=InProgress(current_step=steps[0] if steps else None),
            steps_remaining=list(steps),
            ticket_mapping=dict(ticket_mapping or {}),
        )
        self.save(session)
        self.artifacts_dir(session.session_id).mkdir(parents=True, exist_ok=True)
        logger.info(
            f"Created session {session.session_id} for plan '{plan_id}' "
            f"({len(steps)} steps)"
        )
        return session

    def save(self, session: Session) -> None:
        path = self._path(session.session_id)
        try:
            atomic_write_text(path, session.model_dump_json(indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to save session {session.session_id}: {e}")
        logger.debug(f"Session {session.session_id} saved ({session.status.value})")

    def load(self, session_id: str) -> Session:
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(f"Session not found: {session_id}")
        with open(path, "r") as f:
            data = json.load(f)
        return Session.model_validate(data)

    def get(self, session_id: str) -> Optional[Session]:
        try:
            return self.load(session_id)
        except SessionNotFound:
            return None

    def iter_sessions(self) -> Iterable[Session]:
        """Yield every readable session record; unreadable ones are skipped."""
        if not self.sessions_dir.exists():
            return
        for path in sorted(self.sessions_dir.glob("*.json")):
            try:
                with open(path, "r") as f:
                    data = json.load(f)
                yield Session.model_validate(data)
            except (OSError, json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Failed to read session {path}: {e}")

    def list_all(
        self,
        plan_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[SessionSummary]:
        summaries = []
        for session in self.iter_sessions():
            if plan_id and session.plan_id != plan_id:
                continue
            if status and session.status != status:
                continue
            summaries.append(SessionSummary.from_session(session))
        summaries.sort(key=lambda s: s.created_at, reverse=True)
        return summaries

    def completed_steps(self, plan_id: str) -> set[str]:
        """Union of the steps completed by every recorded run of a plan."""
        done: set[str] = set()
        for session in self.iter_sessions():
            if session.plan_id == plan_id:
                done.update(session.steps_completed)
        return done

    def delete(self, session_id: str) -> None:
        """Remove a session record and its artifacts. Operator action only."""
        path = self._path(session_id)
        if not path.exists():
            raise SessionNotFound(f"Session not found: {session_id}")
        path.unlink()
        self._cancel_marker(session_id).unlink(missing_ok=True)
        artifacts = self.artifacts_dir(session_id)
        if artifacts.exists():
            shutil.rmtree(artifacts)
        logger.info(f"Deleted session {session_id}")

    def artifacts_dir(self, session_id: str) -> Path:
        return self.artifacts_root / session_id

    # -- Cross-process cancellation marker --

    def _cancel_marker(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.cancel"

    def request_cancel(self, session_id: str) -> None:
        if not self._path(session_id).exists():
            raise SessionNotFound(f"Session not found: {session_id}")
        self._cancel_marker(session_id).touch()

    def cancel_requested(self, session_id: str) -> bool:
        return self._cancel_marker(session_id).exists()

    def clear_cancel(self, session_id: str) -> None:
        self._cancel_marker(session_id).unlink(missing_ok=True)
