import logging
import os
import threading
import torch
from PIL import Image
from typing import Dict, List, Optional, Tuple
from huggingface_hub import snapshot_download
from huggingface_hub.errors import (
    GatedRepoError,
    LocalEntryNotFoundError,
    RepositoryNotFoundError,
    HfHubHTTPError,
)
from transformers import AutoImageProcessor, AutoModelForImageClassification

from app.config import LOCAL_MODELS
from app.errors import GatewayUnavailableError, ModelUpdateError
from app.models import ClassResult

logger = logging.getLogger(__name__)


class LocalClassifierService:
    """
    On-device image classification with Hugging Face checkpoints.

    Models are loaded lazily and only from the local cache, so a classifier that
    was never downloaded is reported as unavailable instead of triggering a download
    in the middle of a request. Use `update_model` to fetch or refresh a checkpoint.
    """

    def __init__(self, models: Optional[Dict[str, str]] = None):
        self.models = models if models is not None else dict(LOCAL_MODELS)
        self._loaded: Dict[str, Tuple[object, object]] = {}
        self._load_lock = threading.Lock()
        # Forward passes on a shared module are serialized
        self._infer_lock = threading.Lock()
        if torch.cuda.is_available():
            self.device = "cuda"
        elif torch.backends.mps.is_available():
            self.device = "mps"
        else:
            self.device = "cpu"

    def model_name(self, classifier_id: str) -> Optional[str]:
        return self.models.get(classifier_id)

    def has_model(self, classifier_id: str) -> bool:
        """True if the classifier maps to a local checkpoint already present on disk."""
        if classifier_id in self._loaded:
            return True
        model_name = self.model_name(classifier_id)
        if model_name is None:
            return False
        try:
            snapshot_download(repo_id=model_name, local_files_only=True)
            return True
        except LocalEntryNotFoundError:
            return False

    def _load_model(self, classifier_id: str):
        with self._load_lock:
            if classifier_id not in self._loaded:
                model_name = self.model_name(classifier_id)
                if model_name is None:
                    raise GatewayUnavailableError(f"No local model for classifier '{classifier_id}'")
                logger.info(f"Loading local classifier {classifier_id} ({model_name}) on {self.device}...")
                try:
                    processor = AutoImageProcessor.from_pretrained(model_name, local_files_only=True)
                    model = AutoModelForImageClassification.from_pretrained(model_name, local_files_only=True)
                    model.to(self.device).eval()
                except Exception as e:
                    logger.error(f"Failed to load local classifier {classifier_id}: {e}")
                    raise GatewayUnavailableError(f"Local model for '{classifier_id}' is not available") from e
                self._loaded[classifier_id] = (processor, model)
                logger.info(f"Local classifier {classifier_id} loaded successfully.")
            return self._loaded[classifier_id]

    def classify(self, image: Image.Image, classifier_id: str, threshold: float = 0.0) -> List[ClassResult]:
        """
        Runs a forward pass and returns every class scoring at least `threshold`,
        sorted by descending score. Blocking; call from a worker thread.
        """
        processor, model = self._load_model(classifier_id)
        try:
            inputs = processor(images=image.convert("RGB"), return_tensors="pt").to(self.device)
            with self._infer_lock, torch.no_grad():
                logits = model(**inputs).logits
            probs = logits.softmax(dim=-1)[0].tolist()
        except Exception as e:
            logger.error(f"Local inference failed for {classifier_id}: {e}")
            raise GatewayUnavailableError(str(e)) from e

        id2label = model.config.id2label
        results = [
            ClassResult(class_name=id2label[i], score=p)
            for i, p in enumerate(probs)
            if p >= threshold
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results

    def update_model(self, classifier_id: str) -> str:
        """
        Downloads (or refreshes) the checkpoint behind `classifier_id`.
        snapshot_download only fetches files that changed, so this doubles as an update check.
        """
        model_name = self.model_name(classifier_id)
        if model_name is None:
            raise ModelUpdateError(classifier_id, f"We couldn't find a local model with ID: \"{classifier_id}\"", 404)

        token = os.getenv("HF_TOKEN")
        try:
            path = snapshot_download(repo_id=model_name, token=token)
        except GatedRepoError as e:
            raise ModelUpdateError(classifier_id, "Please check your HF_TOKEN and try again.", 401) from e
        except RepositoryNotFoundError as e:
            raise ModelUpdateError(classifier_id, f"We couldn't find a model with ID: \"{classifier_id}\"", 404) from e
        except LocalEntryNotFoundError as e:
            raise ModelUpdateError(classifier_id, "Please check your internet connection.") from e
        except HfHubHTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status is not None and status >= 500:
                raise ModelUpdateError(classifier_id, "Internal server error. Please try again.", status) from e
            raise ModelUpdateError(classifier_id, "Please try again.", status) from e
        except OSError as e:
            raise ModelUpdateError(classifier_id, "Please check your internet connection.") from e

        with self._load_lock:
            # Force a reload from the refreshed snapshot
            self._loaded.pop(classifier_id, None)
        logger.info(f"Local classifier {classifier_id} is ready at: {path}")
        return path


local_classifier_service = LocalClassifierService()
