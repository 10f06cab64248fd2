"""Research API routes for run lifecycle and session polling.

Endpoints:
    POST /v1/research/runs                          Start a run for one provider lane
    GET  /v1/research/runs/{run_id}                 Run snapshot (run, steps, sources, evidence)
    POST /v1/research/runs/{run_id}/tick            Advance a run by at most one step
    POST /v1/research/sessions/{session_id}/advance One pass over every lane of a session
    GET  /v1/research/sessions/{session_id}         Latest run per lane (poll-throttled advance)
    POST /v1/research/sessions/{session_id}/retry   New attempt for a FAILED lane

Tick and advance block on provider calls, so they are plain `def`
endpoints and run in FastAPI's threadpool.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from research_engine.executor.errors import InvalidTransitionError, RunNotFoundError
from research_engine.executor.orchestrator import ResearchOrchestrator, get_orchestrator
from research_engine.executor.schemas import (
    AdvanceSessionRequest,
    ResearchRun,
    RetryLaneRequest,
    RunSnapshot,
    SessionSnapshot,
    StartRunRequest,
    TickResult,
)
from research_engine.executor.throttle import PollThrottle

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/research", tags=["research"])

_poll_throttle: Optional[PollThrottle] = None


def get_poll_throttle() -> PollThrottle:
    """Process-wide throttle for poll-triggered advances (lazy singleton)."""
    global _poll_throttle
    if _poll_throttle is None:
        _poll_throttle = PollThrottle()
    return _poll_throttle


# --- Run endpoints ---


@router.post("/runs", response_model=ResearchRun)
def start_run(
    request: StartRunRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Start a research run.

    Idempotency: if the lane already has an active run, it is returned
    instead of creating a duplicate.
    """
    return orchestrator.start_run(
        request.session_id,
        request.provider,
        request.question,
        mode=request.mode,
        depth=request.depth,
    )


@router.get("/runs/{run_id}", response_model=RunSnapshot)
def get_run(run_id: str, orchestrator: ResearchOrchestrator = Depends(get_orchestrator)):
    """Poll a run's state, steps, and artifacts."""
    try:
        return orchestrator.get_run_snapshot(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


@router.post("/runs/{run_id}/tick", response_model=TickResult)
def tick_run(run_id: str, orchestrator: ResearchOrchestrator = Depends(get_orchestrator)):
    """Advance a run by at most one step."""
    try:
        return orchestrator.tick(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail=f"Run not found: {run_id}")


# --- Session endpoints ---


@router.post("/sessions/{session_id}/advance")
def advance_session(
    session_id: str,
    request: AdvanceSessionRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Run one orchestration pass over every provider lane."""
    results = orchestrator.advance_session(
        session_id, request.question, mode=request.mode, depth=request.depth
    )
    if results is None:
        return {"session_id": session_id, "advanced": False, "lanes": {}}
    return {
        "session_id": session_id,
        "advanced": True,
        "lanes": {provider: result.model_dump() for provider, result in results.items()},
    }


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
def get_session(
    session_id: str,
    advance: bool = Query(default=True, description="Allow a throttled orchestration pass"),
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
    throttle: PollThrottle = Depends(get_poll_throttle),
):
    """Latest run per lane.

    While any lane is still active, a poll may also trigger one
    orchestration pass, at most once per throttle window per session.
    """
    snapshot = orchestrator.get_session_snapshot(session_id)
    runs = [run for run in snapshot.lanes.values() if run is not None]
    if not runs:
        raise HTTPException(status_code=404, detail=f"Session has no runs: {session_id}")

    active = [run for run in runs if not run.state.is_terminal]
    if advance and active and throttle.should_attempt(session_id):
        results = orchestrator.advance_session(
            session_id, active[0].question, mode=active[0].mode, depth=active[0].depth
        )
        snapshot = orchestrator.get_session_snapshot(session_id)
        snapshot.advanced = results is not None
    return snapshot


@router.post("/sessions/{session_id}/retry", response_model=Optional[ResearchRun])
def retry_lane(
    session_id: str,
    request: RetryLaneRequest,
    orchestrator: ResearchOrchestrator = Depends(get_orchestrator),
):
    """Start a new attempt for a FAILED provider lane."""
    try:
        run = orchestrator.retry_lane(session_id, request.provider)
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if run is None:
        raise HTTPException(status_code=409, detail=f"Session {session_id} is being advanced; retry later")
    return run
