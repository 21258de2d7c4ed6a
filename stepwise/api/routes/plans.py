"""Plan API routes.

- GET /plans                              list plans
- GET /plans/{plan_id}                    full plan
- GET /plans/{plan_id}/conflicts          live and abandoned sessions on the plan
- GET /plans/{plan_id}/resolve?intent=    dry-run step selection
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from stepwise.errors import PreconditionError
from stepwise.executor.step_resolver import Resolution, infer_intent, resolve
from stepwise.plans.schemas import Plan, PlanSummary
from stepwise.plans.store import PlanStore
from stepwise.sessions.conflicts import DEFAULT_STALENESS, ConflictDetector, ConflictReport
from stepwise.sessions.store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["plans"])

_plans: PlanStore | None = None
_sessions: SessionStore | None = None
_staleness: timedelta = DEFAULT_STALENESS


def init_stores(plans: PlanStore, sessions: SessionStore, staleness: Optional[timedelta] = None) -> None:
    global _plans, _sessions, _staleness
    _plans = plans
    _sessions = sessions
    _staleness = staleness or DEFAULT_STALENESS


def _get_stores() -> tuple[PlanStore, SessionStore]:
    if _plans is None or _sessions is None:
        raise HTTPException(status_code=503, detail="Plan store not initialized")
    return _plans, _sessions


def _get_plan(plan_id: str) -> Plan:
    plans, _ = _get_stores()
    try:
        return plans.get(plan_id)
    except PreconditionError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.get("", response_model=list[PlanSummary])
async def list_plans() -> list[PlanSummary]:
    plans, _ = _get_stores()
    return plans.list_all()


@router.get("/{plan_id}", response_model=Plan)
async def get_plan(plan_id: str) -> Plan:
    return _get_plan(plan_id)


@router.get("/{plan_id}/conflicts", response_model=ConflictReport)
async def get_conflicts(plan_id: str) -> ConflictReport:
    """Scan for other in-flight sessions on this plan."""
    plan = _get_plan(plan_id)
    _, sessions = _get_stores()
    return ConflictDetector(sessions, _staleness).detect(plan.plan_id)


@router.get("/{plan_id}/resolve", response_model=Resolution)
async def resolve_steps(
    plan_id: str,
    intent: str = Query("remaining", description="Free-text selection, e.g. 'next', 'all', 'step-1..step-3'"),
) -> Resolution:
    """Preview which steps a run with this selection would execute."""
    plan = _get_plan(plan_id)
    _, sessions = _get_stores()
    return resolve(plan, sessions.completed_steps(plan.plan_id), infer_intent(intent, plan))
