import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple, Union

import numpy as np
from PIL import Image

from app.config import CLASSIFY_THRESHOLD, DEFAULT_CLASSIFIER_ID, OCCLUSION_MAX_CONCURRENCY
from app.errors import (
    AnalysisCancelledError,
    AnalysisFailedError,
    GatewayUnavailableError,
    IncompleteGridError,
    LabelNotFoundError,
    NoBaselineScoreError,
)
from app.models import ClassResult
from app.services.classifier_gateway import classifier_gateway
from app.services.heatmap_compositor import SENTINEL, HeatmapResult, heatmap_compositor
from app.services.masking_service import masking_service
from app.services.occlusion_geometry import GridCell

logger = logging.getLogger(__name__)

# Grid value of a cell whose classification failed or omitted the analyzed class
UNRESOLVED = float("nan")

ProgressCallback = Callable[[int, int], None]


class CancellationToken:
    """Cooperative cancellation flag shared between a request and the analysis it started."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise AnalysisCancelledError("Analysis was cancelled")


@dataclass(frozen=True)
class AnalysisContext:
    """Everything the pipeline needs from the caller's session, passed explicitly."""
    classifier_id: str = DEFAULT_CLASSIFIER_ID
    threshold: float = CLASSIFY_THRESHOLD


@dataclass
class OcclusionRun:
    class_label: str
    baseline_score: float
    grid: np.ndarray
    failures: Dict[GridCell, Exception] = field(default_factory=dict)
    elapsed: float = 0.0

    @property
    def unresolved_cells(self) -> List[GridCell]:
        return sorted(self.failures)


def find_score(results: List[ClassResult], class_label: str) -> float:
    """Score of `class_label` anywhere in the result list, not just the top entry."""
    for result in results:
        if result.class_name == class_label:
            return float(result.score)
    raise LabelNotFoundError(class_label)


def baseline_score_for(baseline: List[ClassResult], class_label: str) -> float:
    try:
        return find_score(baseline, class_label)
    except LabelNotFoundError:
        raise NoBaselineScoreError(class_label)


class OcclusionService:
    def __init__(self, gateway=classifier_gateway, masking=masking_service,
                 compositor=heatmap_compositor,
                 max_concurrency: Optional[int] = OCCLUSION_MAX_CONCURRENCY):
        self.gateway = gateway
        self.masking = masking
        self.compositor = compositor
        self.geometry = masking.geometry
        self.max_concurrency = max_concurrency

    def new_grid(self) -> np.ndarray:
        size = self.geometry.grid_size
        return np.full((size, size), SENTINEL, dtype=np.float64)

    async def analyze(self, image: Image.Image, class_label: str, baseline_score: float,
                      context: AnalysisContext,
                      token: Optional[CancellationToken] = None,
                      on_progress: Optional[ProgressCallback] = None) -> OcclusionRun:
        """
        Classifies every masked variant of `image` concurrently and collects the
        score of `class_label` per cell.

        Each task owns exactly one grid index. A failed call or a response without
        `class_label` leaves its cell UNRESOLVED; the batch carries on. Only when no
        cell at all could be resolved does the analysis fail as a whole.
        """
        token = token or CancellationToken()
        grid = self.new_grid()
        run = OcclusionRun(class_label=class_label, baseline_score=baseline_score, grid=grid)
        total = self.geometry.cell_count
        completed = 0
        semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency else None

        async def dispatch(masked: Image.Image) -> List[ClassResult]:
            if semaphore is None:
                token.raise_if_cancelled()
                return await self.gateway.classify(masked, context.classifier_id, context.threshold)
            async with semaphore:
                token.raise_if_cancelled()
                return await self.gateway.classify(masked, context.classifier_id, context.threshold)

        async def sample(cell: GridCell):
            nonlocal completed
            index = self.geometry.grid_index(cell)
            masked = self.masking.mask(image, cell)
            try:
                results = await dispatch(masked)
                grid[index] = find_score(results, class_label)
            except (GatewayUnavailableError, LabelNotFoundError) as e:
                logger.debug(f"Cell {tuple(cell)} unresolved: {e}")
                grid[index] = UNRESOLVED
                run.failures[cell] = e
            finally:
                completed += 1
                if on_progress is not None:
                    on_progress(completed, total)

        start_time = time.perf_counter()
        tasks = [asyncio.ensure_future(sample(cell)) for cell in self.geometry.cells()]
        try:
            await asyncio.gather(*tasks)
        except BaseException as e:
            # No cell task may outlive the analysis that started it
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if isinstance(e, AnalysisCancelledError):
                logger.info(f"Occlusion analysis of '{class_label}' cancelled")
            else:
                logger.error(f"Occlusion analysis of '{class_label}' aborted: {e!r}")
            raise
        run.elapsed = time.perf_counter() - start_time

        if np.any(grid[self.geometry.active_slice()] == SENTINEL):
            raise IncompleteGridError("Analysis finished with unsampled cells")

        gateway_failures = sum(isinstance(e, GatewayUnavailableError) for e in run.failures.values())
        logger.info(f"Occlusion analysis of '{class_label}' finished in {run.elapsed:.3f}s: "
                    f"{total - len(run.failures)}/{total} cells resolved, {gateway_failures} gateway errors")

        if len(run.failures) == total:
            if gateway_failures == total:
                raise AnalysisFailedError(f"Classifier unavailable for all {total} cells")
            raise AnalysisFailedError(f"No cell could be resolved for '{class_label}'")
        return run

    async def explain(self, image: Image.Image, class_label: str, baseline: List[ClassResult],
                      context: AnalysisContext,
                      output_size: Union[int, Tuple[int, int]],
                      token: Optional[CancellationToken] = None,
                      on_progress: Optional[ProgressCallback] = None) -> Tuple[HeatmapResult, OcclusionRun]:
        """Full pipeline for one class: baseline lookup, grid sampling, compositing."""
        token = token or CancellationToken()
        baseline_score = baseline_score_for(baseline, class_label)
        run = await self.analyze(image, class_label, baseline_score, context, token, on_progress)
        token.raise_if_cancelled()
        result = self.compositor.composite(run.grid, baseline_score, output_size)
        return result, run


occlusion_service = OcclusionService()
