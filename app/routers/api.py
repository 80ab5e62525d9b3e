from fastapi import APIRouter, HTTPException, Request
from typing import List
from app.models import AnalysisLogEntry, HealthCheckResponse

router = APIRouter(prefix="/api")

from app.dal.database import db_manager
from app.dal.session_repo import session_repo
from app.services.classifier_gateway import classifier_gateway


def get_session_id(request: Request) -> str:
    """Session id from the cookie, or the one the middleware just issued for this request."""
    session_id = request.cookies.get("session_id") or getattr(request.state, "session_id", None)
    if not session_id:
        raise HTTPException(status_code=400, detail="No session found - reload page")
    return session_id


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    session_id = request.cookies.get("session_id") or getattr(request.state, "session_id", None)
    classifier_id = session_repo.get_classifier_id(session_id) if session_id else "default"
    return HealthCheckResponse(
        status="OK",
        classifier_id=classifier_id,
        local_model_available=classifier_gateway.is_local(classifier_id)
    )


@router.get("/analyses", response_model=List[AnalysisLogEntry])
async def list_analyses(request: Request, limit: int = 20):
    """Most recent heatmap analyses of this session, newest first."""
    session_id = get_session_id(request)
    rows = db_manager.recent_analyses(session_id, limit)
    return [
        AnalysisLogEntry(class_label=label, classifier_id=classifier_id,
                         unresolved_cells=unresolved, latency_ms=latency)
        for label, classifier_id, unresolved, latency in rows
    ]
