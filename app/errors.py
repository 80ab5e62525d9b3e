"""
Exceptions raised by the occlusion analysis pipeline and its classifier gateways.
"""
from typing import Optional


class OcclusionError(Exception):
    """Base class for all analysis errors."""


class GatewayUnavailableError(OcclusionError):
    """The classifier call failed outright (network, credentials or model error)."""


class LabelNotFoundError(OcclusionError):
    """The classifier response does not contain the class under analysis."""

    def __init__(self, class_label: str):
        super().__init__(f"Class '{class_label}' missing from classifier response")
        self.class_label = class_label


class IncompleteGridError(OcclusionError):
    """Compositing was attempted before every grid cell reported."""


class NoBaselineScoreError(OcclusionError):
    """The class was not part of the unmasked classification result."""

    def __init__(self, class_label: str):
        super().__init__(f"No baseline score for class '{class_label}'")
        self.class_label = class_label


class AnalysisFailedError(OcclusionError):
    """The analysis as a whole could not produce a usable grid."""


class AnalysisCancelledError(OcclusionError):
    """The analysis was superseded before it finished."""


class ModelUpdateError(OcclusionError):
    def __init__(self, classifier_id: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.classifier_id = classifier_id
        self.status_code = status_code
