"""Conflict detection between runs of the same plan.

Before a new run creates its session, every persisted in-progress session on
the same plan is classified by the age of its last update:

- younger than the staleness threshold: a live conflict. The caller must
  decide explicitly whether to continue or abort.
- older: abandoned. Reported so the operator can clean up, never blocking.

Isolation is optimistic. Nothing is locked; two runs that both decide to
continue will both run.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, Field

from stepwise.sessions.schemas import SessionStatus, SessionSummary, utcnow
from stepwise.sessions.store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_STALENESS = timedelta(hours=1)


class ConflictReport(BaseModel):
    """Outcome of a conflict scan for one plan."""

    plan_id: str
    conflict: Optional[SessionSummary] = Field(
        default=None,
        description="Most recently updated live session on the plan, if any",
    )
    live: list[SessionSummary] = Field(default_factory=list)
    abandoned: list[SessionSummary] = Field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return self.conflict is not None


class ConflictDetector:
    """Scans the session store for other in-flight runs on a plan."""

    def __init__(self, store: SessionStore, staleness: timedelta = DEFAULT_STALENESS):
        self.store = store
        self.staleness = staleness

    def is_stale(self, summary: SessionSummary, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - summary.last_updated_at >= self.staleness

    def detect(
        self,
        plan_id: str,
        now: Optional[datetime] = None,
        exclude_session: Optional[str] = None,
    ) -> ConflictReport:
        now = now or utcnow()
        report = ConflictReport(plan_id=plan_id)

        for summary in self.store.list_all(plan_id=plan_id, status=SessionStatus.IN_PROGRESS):
            if summary.session_id == exclude_session:
                continue
            if self.is_stale(summary, now):
                report.abandoned.append(summary)
            else:
                report.live.append(summary)

        if report.live:
            report.conflict = max(report.live, key=lambda s: s.last_updated_at)
            logger.warning(
                f"Plan '{plan_id}' has {len(report.live)} live session(s); "
                f"most recent: {report.conflict.session_id} "
                f"(updated {report.conflict.last_updated_at.isoformat()})"
            )
        for summary in report.abandoned:
            age_minutes = int((now - summary.last_updated_at).total_seconds() // 60)
            logger.info(
                f"Session {summary.session_id} on plan '{plan_id}' looks abandoned "
                f"(no update for {age_minutes} min)"
            )
        return report
