"""Run cancellation flags.

An in-memory flag per session gives a fast check within the process; the
session store's cancel marker covers requests from another process
(``stepwise cancel <session_id>``). The runner checks both at every phase
boundary.
"""

import logging
import threading
from typing import Optional

from stepwise.sessions.store import SessionStore

logger = logging.getLogger(__name__)

_cancellation_flags: dict[str, bool] = {}
_flags_lock = threading.Lock()


def request_cancellation(session_id: str, store: Optional[SessionStore] = None) -> None:
    if store is not None:
        store.request_cancel(session_id)
    with _flags_lock:
        _cancellation_flags[session_id] = True
    logger.info(f"Cancellation requested for session {session_id}")


def is_cancelled(session_id: str, store: Optional[SessionStore] = None) -> bool:
    with _flags_lock:
        if _cancellation_flags.get(session_id):
            return True

    if store is not None and store.cancel_requested(session_id):
        with _flags_lock:
            _cancellation_flags[session_id] = True
        return True

    return False


def clear_cancellation(session_id: str, store: Optional[SessionStore] = None) -> None:
    with _flags_lock:
        _cancellation_flags.pop(session_id, None)
    if store is not None:
        store.clear_cancel(session_id)
