import asyncio
from typing import Dict, Iterable, List, Optional

import numpy as np
from PIL import Image

from app.config import MASK_COLOR
from app.errors import GatewayUnavailableError
from app.models import ClassResult
from app.services.occlusion_geometry import GridCell, default_geometry


def locate_mask(image: Image.Image) -> Optional[GridCell]:
    """Finds the occluded cell by looking for the mask color."""
    arr = np.asarray(image.convert("RGB"))
    hits = np.all(arr == np.array(MASK_COLOR, dtype=np.uint8), axis=-1)
    if not hits.any():
        return None
    ys, xs = np.nonzero(hits)
    return GridCell(int(ys.min()) // default_geometry.stride, int(xs.min()) // default_geometry.stride)


class CellScoreGateway:
    """
    Stand-in classifier. The unmasked image gets `baseline`; a masked image gets
    `label` scored from `cell_scores` (or `default_score`), plus a distractor class.
    """

    def __init__(self, label: str = "cat", baseline: Optional[List[ClassResult]] = None,
                 cell_scores: Optional[Dict[GridCell, float]] = None, default_score: float = 0.90,
                 fail_cells: Iterable[GridCell] = (), omit_cells: Iterable[GridCell] = (),
                 fail_all: bool = False):
        self.label = label
        self.baseline = baseline or [
            ClassResult(class_name="cat", score=0.92),
            ClassResult(class_name="dog", score=0.05),
        ]
        self.cell_scores = cell_scores or {}
        self.default_score = default_score
        self.fail_cells = set(fail_cells)
        self.omit_cells = set(omit_cells)
        self.fail_all = fail_all
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_call = None

    def is_local(self, classifier_id: str) -> bool:
        return True

    def list_classifiers(self) -> List[str]:
        return ["custom-model-1"]

    async def classify(self, image: Image.Image, classifier_id: str, threshold: float = 0.0) -> List[ClassResult]:
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_call is not None:
                self.on_call(self.calls)
            # Yield so concurrent calls actually overlap
            await asyncio.sleep(0)
            cell = locate_mask(image)
            if cell is None:
                return list(self.baseline)
            if self.fail_all or cell in self.fail_cells:
                raise GatewayUnavailableError(f"classifier down for {tuple(cell)}")
            if cell in self.omit_cells:
                return [ClassResult(class_name="dog", score=0.40)]
            score = self.cell_scores.get(cell, self.default_score)
            return [
                ClassResult(class_name=self.label, score=score),
                ClassResult(class_name="dog", score=round(1.0 - score, 4)),
            ]
        finally:
            self.in_flight -= 1
