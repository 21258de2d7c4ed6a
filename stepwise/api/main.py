"""Stepwise API - read-only view of sessions and plans.

Runs are started from the command line; this service only reports on them:
- Sessions (lifecycle state, completed/remaining steps, publish state)
- Plans (structure, conflicting sessions, selection previews)
"""

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stepwise import __version__
from stepwise.api.routes import plans, sessions
from stepwise.config import load_settings
from stepwise.plans.store import PlanStore
from stepwise.sessions.store import SessionStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = load_settings()
    session_store = SessionStore(settings.resolved_state_dir())
    plan_store = PlanStore(settings.resolved_plans_dir())

    logger.info("Loading plan definitions...")
    plan_store.load()
    logger.info(f"Loaded {len(plan_store.list_all())} plans")

    sessions.init_store(session_store)
    plans.init_stores(plan_store, session_store, timedelta(minutes=settings.staleness_minutes))

    logger.info(f"Stepwise API ready (state dir: {settings.resolved_state_dir()})")
    yield
    logger.info("Shutting down Stepwise API")


app = FastAPI(
    title="Stepwise API",
    description="""
## Step-execution sessions

Read-only view of orchestration runs.

### Key Endpoints

- `GET /v1/sessions` - List sessions
- `GET /v1/sessions/{session_id}` - Full session record
- `GET /v1/plans/{plan_id}/conflicts` - Live and abandoned sessions on a plan
- `GET /v1/plans/{plan_id}/resolve?intent=next` - Preview step selection
""",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router, prefix="/v1")
app.include_router(plans.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Stepwise API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "sessions": "/v1/sessions",
            "plans": "/v1/plans",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stepwise.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )
