from dataclasses import dataclass
from typing import Iterator, NamedTuple, Tuple

from app.config import MODEL_IMAGE_SIZE, OCCLUSION_MASK_SIZE, OCCLUSION_STRIDE, OCCLUSION_PADDING


class GridCell(NamedTuple):
    row: int
    col: int


@dataclass(frozen=True)
class GridGeometry:
    """
    Coupled constants of the occlusion grid.

    A mask of `mask_size` pixels slides over a square image of `input_size` pixels
    with step `stride`; every position is one cell. The confidence grid adds
    `padding` sentinel cells on each side.
    """
    input_size: int = MODEL_IMAGE_SIZE
    mask_size: int = OCCLUSION_MASK_SIZE
    stride: int = OCCLUSION_STRIDE
    padding: int = OCCLUSION_PADDING

    def __post_init__(self):
        if self.stride <= 0 or self.mask_size <= 0 or self.padding < 0:
            raise ValueError("Grid geometry values must be positive")
        span = self.input_size - self.mask_size
        if span < 0 or span % self.stride != 0:
            raise ValueError(
                f"stride ({self.stride}) must tile input_size ({self.input_size}) "
                f"minus mask_size ({self.mask_size}) exactly"
            )

    @property
    def cells_per_side(self) -> int:
        return (self.input_size - self.mask_size) // self.stride + 1

    @property
    def grid_size(self) -> int:
        return self.cells_per_side + 2 * self.padding

    @property
    def cell_count(self) -> int:
        return self.cells_per_side ** 2

    def cells(self) -> Iterator[GridCell]:
        """Row-major iteration over every occlusion position."""
        for row in range(self.cells_per_side):
            for col in range(self.cells_per_side):
                yield GridCell(row, col)

    def validate_cell(self, cell: GridCell):
        n = self.cells_per_side
        if not (0 <= cell.row < n and 0 <= cell.col < n):
            raise ValueError(f"Cell {tuple(cell)} outside {n}x{n} grid")

    def cell_box(self, cell: GridCell) -> Tuple[int, int, int, int]:
        """Pixel rectangle (left, top, right, bottom) covered by the mask, right/bottom exclusive."""
        self.validate_cell(cell)
        left = cell.col * self.stride
        top = cell.row * self.stride
        return (left, top, left + self.mask_size, top + self.mask_size)

    def grid_index(self, cell: GridCell) -> Tuple[int, int]:
        return (cell.row + self.padding, cell.col + self.padding)

    def active_slice(self) -> Tuple[slice, slice]:
        s = slice(self.padding, self.padding + self.cells_per_side)
        return (s, s)

    def pixel_to_grid(self, pixel: float) -> float:
        """Maps an input-image pixel coordinate to a fractional grid index.

        Grid samples sit at mask centers: cell k is centered on k*stride + mask_size/2.
        """
        return (pixel - self.mask_size / 2.0) / self.stride + self.padding


default_geometry = GridGeometry()
