import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from PIL import Image

from app.config import CLASSIFY_THRESHOLD, DEFAULT_CLASSIFIER_ID
from app.dal.database import db_manager
from app.errors import AnalysisCancelledError
from app.models import ClassResult
from app.services.heatmap_cache import HeatmapCache
from app.services.occlusion_service import AnalysisContext, CancellationToken

logger = logging.getLogger(__name__)


@dataclass
class AnalysisSession:
    session_id: str
    photo_id: str
    base_image: Image.Image
    display_image: Image.Image
    classifier_id: str
    baseline: List[ClassResult]
    cache: HeatmapCache = field(default_factory=HeatmapCache)
    token: Optional[CancellationToken] = None
    active_label: Optional[str] = None
    progress: tuple = (0, 0)
    # Heatmap requests are numbered on arrival; the running token remembers which one started it
    request_count: int = 0
    token_request: int = 0

    @property
    def display_size(self) -> int:
        return self.display_image.width

    def context(self, threshold: float = CLASSIFY_THRESHOLD) -> AnalysisContext:
        return AnalysisContext(classifier_id=self.classifier_id, threshold=threshold)


class SessionRepository:
    def __init__(self, db=db_manager):
        # key: session_id, value: the session's current photo and its analyses
        self._storage: Dict[str, AnalysisSession] = {}
        self._lock = threading.Lock()
        self.db = db

    def get(self, session_id: str) -> Optional[AnalysisSession]:
        with self._lock:
            return self._storage.get(session_id)

    def set_photo(self, session_id: str, base_image: Image.Image, display_image: Image.Image,
                  classifier_id: str, baseline: List[ClassResult]) -> AnalysisSession:
        """Replaces the session's base image. Cached heatmaps and running analyses of the old one are dropped."""
        session = AnalysisSession(
            session_id=session_id,
            photo_id=str(uuid.uuid4()),
            base_image=base_image,
            display_image=display_image,
            classifier_id=classifier_id,
            baseline=baseline,
        )
        with self._lock:
            previous = self._storage.get(session_id)
            self._storage[session_id] = session
        if previous is not None:
            self._retire(previous)
        return session

    def next_request(self, session: AnalysisSession) -> int:
        with self._lock:
            session.request_count += 1
            return session.request_count

    def begin_analysis(self, session: AnalysisSession, class_label: str,
                       request_id: Optional[int] = None) -> CancellationToken:
        """
        Token for an analysis of `class_label`. Switching to another class cancels the running one,
        unless that one was requested later than `request_id`: then this request is the stale one.
        """
        with self._lock:
            if request_id is None:
                session.request_count += 1
                request_id = session.request_count
            if session.token is not None and not session.token.cancelled:
                if session.active_label == class_label:
                    return session.token
                if request_id < session.token_request:
                    raise AnalysisCancelledError(
                        f"Request for '{class_label}' superseded by '{session.active_label}'"
                    )
                logger.info(f"Cancelling analysis of '{session.active_label}' in favour of '{class_label}'")
                session.token.cancel()
            session.token = CancellationToken()
            session.token_request = request_id
            session.active_label = class_label
            session.progress = (0, 0)
            return session.token

    def finish_analysis(self, session: AnalysisSession, token: CancellationToken):
        with self._lock:
            if session.token is token:
                session.token = None

    def report_progress(self, session: AnalysisSession, token: CancellationToken, completed: int, total: int):
        """Records progress of the analysis owning `token`. Superseded analyses are ignored."""
        with self._lock:
            if session.token is token and not token.cancelled:
                session.progress = (completed, total)

    def clear(self, session_id: str):
        with self._lock:
            session = self._storage.pop(session_id, None)
        if session is not None:
            self._retire(session)

    def _retire(self, session: AnalysisSession):
        if session.token is not None:
            session.token.cancel()
        session.cache.clear()

    def get_classifier_id(self, session_id: str) -> str:
        return self.db.get_selected_classifier(session_id) or DEFAULT_CLASSIFIER_ID

    def set_classifier_id(self, session_id: str, classifier_id: str):
        self.db.set_selected_classifier(session_id, classifier_id)


session_repo = SessionRepository()
