from pydantic import BaseModel, ConfigDict
from typing import List, Optional


class ClassResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    class_name: str
    score: float


class HealthCheckResponse(BaseModel):
    status: str
    classifier_id: str
    local_model_available: bool


class ClassifierListResponse(BaseModel):
    default: List[str]
    custom: List[str]
    selected: str


class ClassifierSelection(BaseModel):
    classifier_id: str


class ModelUpdateResponse(BaseModel):
    classifier_id: str
    path: str
    status: str


class PhotoAnalysisResponse(BaseModel):
    photo_id: str
    classifier_id: str
    predictions: List[ClassResult]
    display_size: int
    prepared_image_base64: Optional[str] = None
    execution_times: Optional[dict] = None


class HeatmapRequest(BaseModel):
    class_label: str


class HeatmapResponse(BaseModel):
    photo_id: str
    class_label: str
    baseline_score: float
    max_importance: float
    peak_cell: Optional[List[int]] = None
    unresolved_cells: List[List[int]] = []
    heatmap_base64: str
    outline_base64: str
    cached: bool = False
    execution_times: Optional[dict] = None


class ProgressResponse(BaseModel):
    photo_id: Optional[str] = None
    class_label: Optional[str] = None
    completed: int = 0
    total: int = 0


class AnalysisLogEntry(BaseModel):
    class_label: str
    classifier_id: str
    unresolved_cells: int
    latency_ms: int
