"""Session API routes.

Read-only views over the session store:
- GET /sessions                  list sessions (filter by plan_id, status)
- GET /sessions/{session_id}     full session record
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from stepwise.errors import SessionNotFound
from stepwise.sessions.schemas import Session, SessionStatus, SessionSummary
from stepwise.sessions.store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

_store: SessionStore | None = None


def init_store(store: SessionStore) -> None:
    global _store
    _store = store


def _get_store() -> SessionStore:
    if _store is None:
        raise HTTPException(status_code=503, detail="Session store not initialized")
    return _store


@router.get("", response_model=list[SessionSummary])
async def list_sessions(
    plan_id: Optional[str] = Query(None, description="Filter by plan"),
    status: Optional[SessionStatus] = Query(None, description="Filter by lifecycle state"),
) -> list[SessionSummary]:
    """List sessions, newest first."""
    return _get_store().list_all(plan_id=plan_id, status=status)


@router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str) -> Session:
    try:
        return _get_store().load(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found")
