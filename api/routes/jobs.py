"""Worker job endpoints: run a session, recover stuck sessions, clean up, poll status."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, BackgroundTasks, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from config.settings import settings
from db.connection import get_db
from db.models import PredictionSession, PredictionSessionStatus
from src.session_recovery import cleanup_old_sessions, recover_stuck_sessions
from src.session_store import SessionStore
from src.session_worker import execute_prediction_session_with_retry

router = APIRouter()


class ExecuteSessionRequest(BaseModel):
    """Request to run a prediction session."""
    max_attempts: int = Field(default=settings.worker_max_attempts, ge=1)


class JobAcceptedResponse(BaseModel):
    """Response after scheduling a background job."""
    job: str
    status: str
    message: str
    session_id: Optional[str] = None


class SessionStatusResponse(BaseModel):
    """Status of a prediction session."""
    session_id: str
    market_id: str
    status: str
    step: Optional[str]
    error: Optional[str]
    selected_models: list[str]
    selected_research_sources: list[str]
    prediction_ids: list[int]
    research_cache_ids: list[int]
    created_at: Optional[datetime]
    completed_at: Optional[datetime]


def get_session_store() -> SessionStore:
    """Dependency for the session store (overridden in tests)."""
    return SessionStore()


def _to_status(session: PredictionSession) -> SessionStatusResponse:
    return SessionStatusResponse(
        session_id=session.id,
        market_id=session.market_id,
        status=session.status.value,
        step=session.step,
        error=session.error,
        selected_models=session.selected_models or [],
        selected_research_sources=session.selected_research_sources or [],
        prediction_ids=[p.id for p in session.predictions],
        research_cache_ids=[r.id for r in session.research],
        created_at=session.created_at,
        completed_at=session.completed_at,
    )


@router.post("/sessions/{session_id}/execute", response_model=JobAcceptedResponse, status_code=202)
async def execute_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[ExecuteSessionRequest] = None,
    store: SessionStore = Depends(get_session_store),
):
    """
    Run a prediction session in the background.

    The worker retries on storage failures. Use GET /api/jobs/sessions/{session_id}
    to poll progress.
    """
    request = request or ExecuteSessionRequest()
    session = store.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
    if session.is_terminal:
        raise HTTPException(
            status_code=409,
            detail=f"Session {session_id} already {session.status.value}",
        )

    background_tasks.add_task(execute_prediction_session_with_retry, session_id, request.max_attempts)

    return JobAcceptedResponse(
        job="execute_session",
        status="accepted",
        session_id=session_id,
        message=f"Session started. Use GET /api/jobs/sessions/{session_id} to check progress.",
    )


@router.post("/recovery", response_model=JobAcceptedResponse, status_code=202)
async def start_recovery(background_tasks: BackgroundTasks, timeout_minutes: Optional[int] = None):
    """Re-run stuck sessions in the background."""
    background_tasks.add_task(recover_stuck_sessions, timeout_minutes)
    return JobAcceptedResponse(
        job="recover_stuck_sessions",
        status="accepted",
        message="Recovery started.",
    )


@router.post("/cleanup")
async def cleanup_sessions(
    hours_old: Optional[int] = Query(default=None, ge=0),
    store: SessionStore = Depends(get_session_store),
):
    """Delete old failed sessions."""
    if hours_old is None:
        hours_old = settings.cleanup_hours_old
    deleted = cleanup_old_sessions(hours_old=hours_old, store=store)
    return {"deleted": deleted, "hours_old": hours_old}


@router.get("/sessions/{session_id}", response_model=SessionStatusResponse)
async def get_session_status(session_id: str, db: Session = Depends(get_db)):
    """Get the status of a prediction session."""
    session = db.get(PredictionSession, session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return _to_status(session)


@router.get("/sessions")
async def list_sessions(
    status: Optional[PredictionSessionStatus] = None,
    limit: int = 20,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """List recent prediction sessions."""
    query = db.query(PredictionSession)
    if status is not None:
        query = query.filter(PredictionSession.status == status)
    sessions = query.order_by(PredictionSession.created_at.desc()).offset(offset).limit(limit).all()

    return {
        "sessions": [_to_status(s).model_dump(mode="json") for s in sessions],
        "limit": limit,
        "offset": offset,
    }
