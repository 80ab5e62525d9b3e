import asyncio
import logging
from typing import List
from PIL import Image

from app.config import DEFAULT_CLASSIFIERS, CLASSIFY_THRESHOLD
from app.models import ClassResult
from app.services.local_classifier_service import local_classifier_service
from app.services.vertex_client import vertex_client

logger = logging.getLogger(__name__)


class ClassifierGateway:
    """
    Single entry point for classification. Uses the on-device model when its
    checkpoint is present and falls back to the remote endpoint otherwise.
    Both backends raise GatewayUnavailableError on failure.
    """

    def __init__(self, local=local_classifier_service, remote=vertex_client):
        self.local = local
        self.remote = remote

    def is_local(self, classifier_id: str) -> bool:
        return self.local.has_model(classifier_id)

    def classify_sync(self, image: Image.Image, classifier_id: str,
                      threshold: float = CLASSIFY_THRESHOLD) -> List[ClassResult]:
        backend = self.local if self.is_local(classifier_id) else self.remote
        return backend.classify(image, classifier_id, threshold)

    async def classify(self, image: Image.Image, classifier_id: str,
                       threshold: float = CLASSIFY_THRESHOLD) -> List[ClassResult]:
        # Both backends block; keep the event loop free for the other cells
        return await asyncio.to_thread(self.classify_sync, image, classifier_id, threshold)

    def list_classifiers(self) -> List[str]:
        return [c for c in self.remote.list_classifiers() if c not in DEFAULT_CLASSIFIERS]


classifier_gateway = ClassifierGateway()
