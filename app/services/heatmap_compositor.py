import io
import logging
from dataclasses import dataclass
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image

from app.config import (
    HEATMAP_TINT,
    HEATMAP_BLUR_STRIDES,
    OUTLINE_LEVELS,
    OUTLINE_COLOR,
    OUTLINE_THICKNESS,
)
from app.errors import IncompleteGridError
from app.services.occlusion_geometry import GridCell, GridGeometry, default_geometry

logger = logging.getLogger(__name__)

# Grid value of a cell that was never sampled
SENTINEL = -1.0


@dataclass(frozen=True)
class HeatmapResult:
    heatmap: np.ndarray  # HxWx4 uint8, tint with importance as alpha
    outline: np.ndarray  # HxWx4 uint8, contour lines on transparent background
    baseline_score: float
    max_importance: float
    peak_cell: Optional[GridCell]
    unresolved_cells: Tuple[GridCell, ...] = ()

    @property
    def size(self) -> Tuple[int, int]:
        return (self.heatmap.shape[1], self.heatmap.shape[0])


def _as_size(output_size: Union[int, Tuple[int, int]]) -> Tuple[int, int]:
    if isinstance(output_size, int):
        width = height = output_size
    else:
        width, height = output_size
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid output size: {output_size}")
    return int(width), int(height)


class HeatmapCompositor:
    """
    Turns a confidence grid into a heatmap raster and a contour outline raster.

    The grid holds one classifier score per occlusion cell. A cell's importance is
    the drop from the baseline score when it is masked. Grid samples sit at mask
    centers, so each output pixel is mapped back to fractional grid coordinates
    and resampled bilinearly, then blurred by a fraction of a stride.

    Unresolved cells (NaN) carry zero weight: the field is interpolated from the
    resolved neighbours instead of being pulled towards a made-up value. The
    sentinel border counts as resolved, zero-importance samples.

    Compositing is a pure function of (grid, baseline_score, output_size).
    """

    def __init__(self, geometry: GridGeometry = default_geometry,
                 tint: tuple = HEATMAP_TINT,
                 levels: tuple = OUTLINE_LEVELS,
                 blur_strides: float = HEATMAP_BLUR_STRIDES):
        self.geometry = geometry
        self.tint = tint
        self.levels = levels
        self.blur_strides = blur_strides

    def importance_grid(self, grid: np.ndarray, baseline_score: float) -> Tuple[np.ndarray, np.ndarray]:
        """Returns (importance, weights), both full grid shape, border zero / weight one."""
        g = self.geometry
        grid = np.asarray(grid, dtype=np.float64)
        if grid.shape != (g.grid_size, g.grid_size):
            raise ValueError(f"Expected {g.grid_size}x{g.grid_size} grid, got {grid.shape}")

        active = grid[g.active_slice()]
        if np.any(active == SENTINEL):
            missing = int(np.count_nonzero(active == SENTINEL))
            raise IncompleteGridError(f"{missing} grid cells were never sampled")

        resolved = ~np.isnan(active)
        importance = np.zeros_like(grid)
        weights = np.ones_like(grid)
        importance[g.active_slice()] = np.where(resolved, baseline_score - np.nan_to_num(active), 0.0)
        weights[g.active_slice()] = resolved.astype(np.float64)
        return importance, weights

    def smooth_field(self, importance: np.ndarray, weights: np.ndarray, size: Tuple[int, int]) -> np.ndarray:
        g = self.geometry
        width, height = size

        xs = g.pixel_to_grid((np.arange(width, dtype=np.float64) + 0.5) * g.input_size / width)
        ys = g.pixel_to_grid((np.arange(height, dtype=np.float64) + 0.5) * g.input_size / height)
        map_x, map_y = np.meshgrid(xs.astype(np.float32), ys.astype(np.float32))

        num = cv2.remap((importance * weights).astype(np.float32), map_x, map_y,
                        interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
        den = cv2.remap(weights.astype(np.float32), map_x, map_y,
                        interpolation=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)

        sigma = self.blur_strides * g.stride * max(width, height) / g.input_size
        if sigma > 0:
            num = cv2.GaussianBlur(num, (0, 0), sigma)
            den = cv2.GaussianBlur(den, (0, 0), sigma)

        field = np.zeros_like(num)
        np.divide(num, den, out=field, where=den > 1e-6)
        return field

    def normalize(self, field: np.ndarray) -> np.ndarray:
        """Positive importance scaled to [0, 1] by its peak. Regions that gained confidence map to 0."""
        peak = float(field.max()) if field.size else 0.0
        if peak <= 0:
            return np.zeros_like(field)
        return np.clip(field / peak, 0.0, 1.0)

    def render_heatmap(self, norm: np.ndarray) -> np.ndarray:
        height, width = norm.shape
        heatmap = np.zeros((height, width, 4), dtype=np.uint8)
        heatmap[..., :3] = self.tint
        heatmap[..., 3] = np.round(norm * 255).astype(np.uint8)
        return heatmap

    def render_outline(self, norm: np.ndarray) -> np.ndarray:
        height, width = norm.shape
        outline = np.zeros((height, width, 4), dtype=np.uint8)
        for level in self.levels:
            binary = (norm >= level).astype(np.uint8)
            if not binary.any():
                continue
            contours, _ = cv2.findContours(binary, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
            cv2.drawContours(outline, contours, -1, OUTLINE_COLOR, OUTLINE_THICKNESS)
        return outline

    def composite(self, grid: np.ndarray, baseline_score: float,
                  output_size: Union[int, Tuple[int, int]]) -> HeatmapResult:
        size = _as_size(output_size)
        importance, weights = self.importance_grid(grid, baseline_score)

        g = self.geometry
        active_importance = importance[g.active_slice()]
        active_weights = weights[g.active_slice()]
        unresolved = tuple(GridCell(int(r), int(c)) for r, c in zip(*np.nonzero(active_weights == 0)))

        if len(unresolved) < g.cell_count:
            masked = np.where(active_weights > 0, active_importance, -np.inf)
            r, c = np.unravel_index(int(np.argmax(masked)), masked.shape)
            peak_cell = GridCell(int(r), int(c))
            max_importance = float(active_importance[r, c])
        else:
            peak_cell = None
            max_importance = 0.0

        norm = self.normalize(self.smooth_field(importance, weights, size))
        heatmap = self.render_heatmap(norm)
        outline = self.render_outline(norm)
        heatmap.setflags(write=False)
        outline.setflags(write=False)

        logger.debug(f"Composited {size[0]}x{size[1]} heatmap, peak {peak_cell} ({max_importance:.3f}), "
                     f"{len(unresolved)} unresolved cells")
        return HeatmapResult(
            heatmap=heatmap,
            outline=outline,
            baseline_score=float(baseline_score),
            max_importance=max_importance,
            peak_cell=peak_cell,
            unresolved_cells=unresolved,
        )


def to_png_bytes(raster: np.ndarray) -> bytes:
    buf = io.BytesIO()
    Image.fromarray(np.ascontiguousarray(raster)).save(buf, format="PNG")
    return buf.getvalue()


def render_overlay(base_image: Image.Image, result: HeatmapResult, alpha: float) -> Image.Image:
    """
    Blends the heatmap and outline onto the photo. `alpha` is the user-chosen global
    opacity of the heatmap layer; it is applied here, never baked into the cached result.
    """
    alpha = min(max(alpha, 0.0), 1.0)
    base = np.asarray(base_image.convert("RGB").resize(result.size, Image.Resampling.LANCZOS), dtype=np.float32)

    layer_alpha = result.heatmap[..., 3:4].astype(np.float32) / 255.0 * alpha
    out = base * (1.0 - layer_alpha) + result.heatmap[..., :3].astype(np.float32) * layer_alpha

    line = result.outline[..., 3:4].astype(np.float32) / 255.0
    out = out * (1.0 - line) + result.outline[..., :3].astype(np.float32) * line

    return Image.fromarray(np.clip(np.round(out), 0, 255).astype(np.uint8))


heatmap_compositor = HeatmapCompositor()
