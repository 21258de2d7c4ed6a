"""Capture of unrecoverable failures.

Every halt that is not a clean policy checkpoint goes through the sink: the
error is written to ``<artifacts>/<session_id>/errors/<timestamp>-<phase>.json``
together with the verbatim collaborator response (if any), the session is
marked failed, and the caller stops.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from stepwise.errors import StepwiseError
from stepwise.sessions.schemas import Session, utcnow
from stepwise.sessions.store import SessionStore, atomic_write_text

logger = logging.getLogger(__name__)


class ErrorSink:
    """Writes error artifacts and fails the session."""

    def __init__(self, store: SessionStore):
        self.store = store

    def errors_dir(self, session_id: str) -> Path:
        return self.store.artifacts_dir(session_id) / "errors"

    def record(
        self,
        session: Session,
        error: StepwiseError,
        *,
        raw: Any = None,
        phase: Optional[str] = None,
        step: Optional[str] = None,
    ) -> Path:
        """Write the error artifact without touching the session state."""
        phase = phase or error.phase or "unknown"
        step = step or error.step or session.current_step
        if raw is None:
            raw = getattr(error, "raw", None)

        payload: dict[str, Any] = {
            "session_id": session.session_id,
            "plan_id": session.plan_id,
            "captured_at": utcnow().isoformat(),
            **error.to_dict(),
        }
        payload["phase"] = phase
        payload["step"] = step
        payload["raw_response"] = raw

        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        path = self.errors_dir(session.session_id) / f"{stamp}-{phase}.json"
        atomic_write_text(path, json.dumps(payload, indent=2, default=str))
        return path

    def capture(
        self,
        session: Session,
        error: StepwiseError,
        *,
        raw: Any = None,
        phase: Optional[str] = None,
        step: Optional[str] = None,
    ) -> Path:
        """Persist the failure and mark the session failed. Returns the artifact path."""
        phase = phase or error.phase or "unknown"
        step = step or error.step or session.current_step
        path = self.record(session, error, raw=raw, phase=phase, step=step)

        fin = getattr(error, "record", None)
        session.fail(
            error.message,
            error_code=error.code,
            needs_reconcile=bool(fin is not None and fin.needs_reconcile),
            commit_id=fin.commit_id if fin is not None else None,
            ticket_id=fin.ticket_id if fin is not None else None,
            error_artifact=str(path),
        )
        self.store.save(session)

        field = getattr(error, "field", None)
        logger.error(
            f"Session {session.session_id} failed in phase '{phase}' at step '{step}'"
            + (f" (field '{field}')" if field else "")
            + f": {error.message} [{path}]"
        )
        return path
