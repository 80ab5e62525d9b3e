import logging
from typing import Iterator, Tuple
from PIL import Image

from app.config import MASK_COLOR
from app.services.occlusion_geometry import GridCell, GridGeometry, default_geometry

logger = logging.getLogger(__name__)

# Modes masked in place; anything else is converted to RGB first
KEPT_MODES = ("RGB", "RGBA", "L", "LA")


class MaskingService:
    def __init__(self, geometry: GridGeometry = default_geometry, color: tuple = MASK_COLOR):
        self.geometry = geometry
        self.color = color

    def fill_for(self, mode: str):
        """The mask color expressed in `mode`, fully opaque where the mode has alpha."""
        return Image.new("RGB", (1, 1), tuple(self.color)).convert(mode).getpixel((0, 0))

    def mask(self, image: Image.Image, cell: GridCell) -> Image.Image:
        """
        Returns a copy of `image` with an opaque square painted over `cell`.
        The source image is never modified.
        """
        if image.size != (self.geometry.input_size, self.geometry.input_size):
            logger.warning(f"Masking image of size {image.size}, expected {self.geometry.input_size}px square")

        if image.mode in KEPT_MODES:
            masked = image.copy()
        else:
            # Palette and exotic modes cannot hold the mask color faithfully
            masked = image.convert("RGB")

        masked.paste(self.fill_for(masked.mode), self.geometry.cell_box(cell))
        return masked

    def iter_masked(self, image: Image.Image) -> Iterator[Tuple[GridCell, Image.Image]]:
        for cell in self.geometry.cells():
            yield cell, self.mask(image, cell)


masking_service = MaskingService()
