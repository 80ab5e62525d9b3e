import asyncio
import logging
from fastapi import APIRouter, HTTPException, Request

from app.config import DEFAULT_CLASSIFIERS
from app.errors import ModelUpdateError
from app.models import ClassifierListResponse, ClassifierSelection, ModelUpdateResponse
from app.dal.session_repo import session_repo
from app.routers.api import get_session_id
from app.services.classifier_gateway import classifier_gateway
from app.services.local_classifier_service import local_classifier_service

router = APIRouter(prefix="/api/classifiers", tags=["classifiers"])

logger = logging.getLogger(__name__)


@router.get("", response_model=ClassifierListResponse)
async def list_classifiers(request: Request):
    session_id = get_session_id(request)
    custom = await asyncio.to_thread(classifier_gateway.list_classifiers)
    return ClassifierListResponse(
        default=DEFAULT_CLASSIFIERS,
        custom=custom,
        selected=session_repo.get_classifier_id(session_id)
    )


@router.put("/selected", response_model=ClassifierSelection)
async def select_classifier(payload: ClassifierSelection, request: Request):
    """Persists the classifier used for the next photo. The current photo keeps its classifier."""
    session_id = get_session_id(request)
    classifier_id = payload.classifier_id.strip()
    if not classifier_id:
        raise HTTPException(status_code=400, detail="classifier_id required")

    try:
        session_repo.set_classifier_id(session_id, classifier_id)
    except Exception as e:
        logger.error(f"Saving classifier selection failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    logger.info(f"Session {session_id} selected classifier {classifier_id}")
    return ClassifierSelection(classifier_id=classifier_id)


@router.post("/{classifier_id}/update", response_model=ModelUpdateResponse)
async def update_classifier(classifier_id: str):
    """Downloads or refreshes the local checkpoint of a classifier."""
    try:
        path = await asyncio.to_thread(local_classifier_service.update_model, classifier_id)
    except ModelUpdateError as e:
        logger.error(f"Unable to download model {classifier_id}: {e}")
        status_code = e.status_code if e.status_code in (401, 404) else 502
        raise HTTPException(status_code=status_code, detail=f"Unable to download model. {e}")
    return ModelUpdateResponse(classifier_id=classifier_id, path=path, status="ready")
