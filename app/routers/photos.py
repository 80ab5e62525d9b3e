import base64
import io
import logging
import time
from fastapi import APIRouter, UploadFile, File, HTTPException, Response, Request
from PIL import UnidentifiedImageError

from app.config import CLASSIFY_THRESHOLD, DEFAULT_OVERLAY_ALPHA, MAX_OUTPUT_SIZE
from app.errors import (
    AnalysisCancelledError,
    AnalysisFailedError,
    GatewayUnavailableError,
    NoBaselineScoreError,
)
from app.models import HeatmapRequest, HeatmapResponse, PhotoAnalysisResponse, ProgressResponse
from app.dal.database import db_manager
from app.dal.session_repo import AnalysisSession, session_repo
from app.routers.api import get_session_id
from app.services.classifier_gateway import classifier_gateway
from app.services.heatmap_compositor import HeatmapResult, render_overlay, to_png_bytes
from app.services.image_preprocess_service import image_preprocess_service
from app.services.occlusion_service import occlusion_service

router = APIRouter(prefix="/api/photos", tags=["photos"])

logger = logging.getLogger(__name__)


def _current_session(request: Request) -> AnalysisSession:
    session = session_repo.get(get_session_id(request))
    if session is None:
        raise HTTPException(status_code=404, detail="No photo in this session")
    return session


@router.post("/upload", response_model=PhotoAnalysisResponse)
async def upload_photo(request: Request, file: UploadFile = File(...)):
    """Sets the session's base image and classifies it. Any previous photo and its heatmaps are dropped."""
    session_id = get_session_id(request)
    session_repo.clear(session_id)

    content = await file.read()
    execution_times = {}

    start_time = time.perf_counter()
    try:
        image = image_preprocess_service.open_image(content)
    except UnidentifiedImageError:
        raise HTTPException(status_code=400, detail="Unsupported image format")
    prepared = image_preprocess_service.crop_to_center(image)
    display_image = image_preprocess_service.crop_to_center(
        image, min(image_preprocess_service.display_size(image), MAX_OUTPUT_SIZE)
    )
    execution_times["image_preprocess"] = f"{(time.perf_counter() - start_time):.3f}s"

    classifier_id = session_repo.get_classifier_id(session_id)
    try:
        start_time = time.perf_counter()
        predictions = await classifier_gateway.classify(prepared, classifier_id, CLASSIFY_THRESHOLD)
        execution_times["classify"] = f"{(time.perf_counter() - start_time):.3f}s"
    except GatewayUnavailableError as e:
        logger.error(f"Classification failed: {e}")
        raise HTTPException(status_code=502, detail=f"Classifier '{classifier_id}' unavailable")

    session = session_repo.set_photo(session_id, prepared, display_image, classifier_id, predictions)
    if predictions:
        logger.info(f"Photo {session.photo_id} top result: {predictions[0].class_name} ({predictions[0].score:.2f})")

    return PhotoAnalysisResponse(
        photo_id=session.photo_id,
        classifier_id=classifier_id,
        predictions=predictions,
        display_size=session.display_size,
        prepared_image_base64=image_preprocess_service.to_base64(prepared),
        execution_times=execution_times
    )


@router.get("/current/content")
async def get_photo_content(request: Request):
    session = _current_session(request)
    buf = io.BytesIO()
    session.base_image.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


@router.post("/current/heatmap", response_model=HeatmapResponse)
async def generate_heatmap(payload: HeatmapRequest, request: Request):
    session = _current_session(request)
    class_label = payload.class_label

    request_id = session_repo.next_request(session)

    async def compute() -> HeatmapResult:
        token = session_repo.begin_analysis(session, class_label, request_id)

        def on_progress(completed: int, total: int):
            session_repo.report_progress(session, token, completed, total)

        try:
            result, run = await occlusion_service.explain(
                session.base_image, class_label, session.baseline, session.context(),
                session.display_size, token, on_progress
            )
        finally:
            session_repo.finish_analysis(session, token)
        db_manager.log_analysis(session.session_id, session.classifier_id, class_label,
                                len(run.failures), int(run.elapsed * 1000))
        return result

    start_time = time.perf_counter()
    try:
        result, cached = await session.cache.get_or_compute(class_label, compute)
    except NoBaselineScoreError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except AnalysisCancelledError:
        raise HTTPException(status_code=409, detail="Analysis was superseded by a newer request")
    except (AnalysisFailedError, GatewayUnavailableError) as e:
        logger.error(f"Heatmap analysis failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    return HeatmapResponse(
        photo_id=session.photo_id,
        class_label=class_label,
        baseline_score=result.baseline_score,
        max_importance=result.max_importance,
        peak_cell=list(result.peak_cell) if result.peak_cell is not None else None,
        unresolved_cells=[list(cell) for cell in result.unresolved_cells],
        heatmap_base64=base64.b64encode(to_png_bytes(result.heatmap)).decode('utf-8'),
        outline_base64=base64.b64encode(to_png_bytes(result.outline)).decode('utf-8'),
        cached=cached,
        execution_times={"heatmap": f"{(time.perf_counter() - start_time):.3f}s"}
    )


@router.get("/current/overlay")
async def get_heatmap_overlay(request: Request, class_label: str, alpha: float = DEFAULT_OVERLAY_ALPHA):
    """Photo blended with an already computed heatmap at the requested opacity."""
    session = _current_session(request)
    result = session.cache.get(class_label)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No heatmap computed for '{class_label}'")

    overlay = render_overlay(session.display_image, result, alpha)
    buf = io.BytesIO()
    overlay.save(buf, format="JPEG")
    return Response(content=buf.getvalue(), media_type="image/jpeg")


@router.get("/current/progress", response_model=ProgressResponse)
async def get_analysis_progress(request: Request):
    session = session_repo.get(get_session_id(request))
    if session is None:
        return ProgressResponse()
    completed, total = session.progress
    return ProgressResponse(
        photo_id=session.photo_id,
        class_label=session.active_label,
        completed=completed,
        total=total
    )


@router.delete("/current")
async def clear_current_photo(request: Request):
    """Drops the session's photo, its cached heatmaps and any running analysis."""
    session_id = get_session_id(request)
    session_repo.clear(session_id)
    return {"status": "cleared"}
