"""
Configuration settings for the Occlusion Heatmap service.
Contains occlusion grid geometry, rendering parameters and classifier defaults.
"""
import os


# --- Occlusion Grid Geometry ---

# The classifier input resolution. Base images are center-cropped and resized to this size.
# The four values below are coupled: OCCLUSION_STRIDE * (cells - 1) + OCCLUSION_MASK_SIZE
# must equal MODEL_IMAGE_SIZE. With the defaults that gives an 11x11 grid of cells.
MODEL_IMAGE_SIZE = 224
OCCLUSION_MASK_SIZE = 64
OCCLUSION_STRIDE = 16

# Number of sentinel cells added on each side of the confidence grid.
# They act as zero-importance samples so the smoothed field fades out at the edges.
OCCLUSION_PADDING = 3

# Solid fill for the occluding square. Saturated magenta rarely appears in natural
# photographs, so the classifier reliably loses the signal under the mask.
MASK_COLOR = (255, 0, 255)

# Upper bound on concurrent gateway calls per analysis. None means "all cells at once".
_max_concurrency = os.getenv("OCCLUSION_MAX_CONCURRENCY")
OCCLUSION_MAX_CONCURRENCY = int(_max_concurrency) if _max_concurrency else None


# --- Heatmap Rendering ---

# RGB tint of the heatmap overlay. Opacity encodes importance.
HEATMAP_TINT = (255, 64, 0)

# Gaussian blur applied to the resampled importance field, in units of grid stride.
HEATMAP_BLUR_STRIDES = 0.5

# Contour levels as fractions of the peak importance.
OUTLINE_LEVELS = (0.35, 0.65)
OUTLINE_COLOR = (255, 255, 255, 255)
OUTLINE_THICKNESS = 2

# Rendered rasters follow the display size of the photo but never exceed this side length.
MAX_OUTPUT_SIZE = 1024

# Default opacity applied when blending the heatmap onto the photo.
DEFAULT_OVERLAY_ALPHA = 0.6


# --- Classifier Configuration ---

# Built-in classifier ids, always offered before any remote endpoints.
DEFAULT_CLASSIFIERS = ["default", "explicit", "food"]
DEFAULT_CLASSIFIER_ID = "default"

# Local (on-device) models, keyed by classifier id. Any other id is resolved remotely.
LOCAL_MODELS = {
    "default": "google/vit-base-patch16-224",
    "explicit": "Falconsai/nsfw_image_detection",
    "food": "nateraw/food",
}

# Minimum score for a class to be reported by the gateway. 0.0 keeps every class,
# which the occlusion analysis relies on to find the analyzed label in each response.
CLASSIFY_THRESHOLD = 0.0
