import base64
import io
import logging
from PIL import Image, ImageOps

from app.config import MODEL_IMAGE_SIZE

logger = logging.getLogger(__name__)


class ImagePreprocessService:
    def open_image(self, image_bytes: bytes) -> Image.Image:
        """Decodes an upload, applying its EXIF orientation so camera photos come out upright."""
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = ImageOps.exif_transpose(img)
            return img.convert("RGB")

    def crop_to_center(self, image: Image.Image, target_size: int = MODEL_IMAGE_SIZE) -> Image.Image:
        """
        Crops the largest centered square and resizes it to target_size x target_size.
        """
        width, height = image.size
        new_dim = min(width, height)
        left = (width - new_dim) // 2
        top = (height - new_dim) // 2
        image = image.crop((left, top, left + new_dim, top + new_dim))

        if image.size != (target_size, target_size):
            logger.debug(f"Resizing image from {image.size} to {target_size}x{target_size}")
            image = image.resize((target_size, target_size), Image.Resampling.LANCZOS)
        return image

    def display_size(self, image: Image.Image) -> int:
        """Side length of the center square at the photo's own resolution."""
        return min(image.size)

    def to_base64(self, image: Image.Image, format: str = "PNG") -> str:
        buf = io.BytesIO()
        image.save(buf, format=format)
        img_b64 = base64.b64encode(buf.getvalue()).decode('utf-8')
        return f"data:image/{format.lower()};base64,{img_b64}"


image_preprocess_service = ImagePreprocessService()
