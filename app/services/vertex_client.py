import base64
import io
import os
import logging
from typing import List
from PIL import Image
from google.api_core import exceptions as google_exceptions
from google.cloud import aiplatform
from google.oauth2 import service_account
import google.auth

from app.errors import GatewayUnavailableError
from app.models import ClassResult

logger = logging.getLogger(__name__)


class VertexClient:
    """Remote classification through deployed Vertex AI image classification endpoints."""

    def __init__(self):
        self.project_id = os.environ.get("PROJECT_ID")
        self.location = os.environ.get("LOCATION", "us-central1")
        self.credentials_path = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS")

        self.setup_complete = False

        if self.project_id:
            try:
                # If credentials path is set, explicit load (dev), else default (cloud run)
                if self.credentials_path and os.path.exists(self.credentials_path):
                    creds = service_account.Credentials.from_service_account_file(self.credentials_path)
                else:
                    creds, _ = google.auth.default()

                aiplatform.init(
                    project=self.project_id,
                    location=self.location,
                    credentials=creds
                )
                self.setup_complete = True
                logger.info(f"Vertex AI initialized for project {self.project_id}")
            except Exception as e:
                logger.error(f"Failed to initialize Vertex AI: {e}")
        else:
            logger.info("PROJECT_ID not set. Remote classifiers are disabled.")

    def list_classifiers(self) -> List[str]:
        """Returns the ids of the endpoints deployed in the configured project."""
        if not self.setup_complete:
            return []
        try:
            return [endpoint.name for endpoint in aiplatform.Endpoint.list()]
        except google_exceptions.GoogleAPICallError as e:
            logger.error(f"Listing Vertex AI endpoints failed: {e}")
            return []

    def classify(self, image: Image.Image, classifier_id: str, threshold: float = 0.0) -> List[ClassResult]:
        """
        Sends one image to the endpoint `classifier_id`. Blocking; call from a worker thread.
        """
        if not self.setup_complete:
            raise GatewayUnavailableError("Vertex AI is not configured.")

        buf = io.BytesIO()
        image.convert("RGB").save(buf, format="JPEG")
        instances = [{"content": base64.b64encode(buf.getvalue()).decode("utf-8")}]
        parameters = {"confidenceThreshold": threshold, "maxPredictions": 1000}

        try:
            endpoint = aiplatform.Endpoint(classifier_id)
            response = endpoint.predict(instances=instances, parameters=parameters)
        except Exception as e:
            # API, auth and transport errors all surface as an unavailable gateway
            logger.error(f"Prediction failed for endpoint {classifier_id}: {e}")
            raise GatewayUnavailableError(str(e)) from e

        if not response.predictions:
            return []

        # AutoML image classification format: parallel lists of names and confidences
        prediction = response.predictions[0]
        results = [
            ClassResult(class_name=name, score=float(conf))
            for name, conf in zip(prediction.get("displayNames", []), prediction.get("confidences", []))
            if float(conf) >= threshold
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results


vertex_client = VertexClient()
