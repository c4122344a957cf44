"""
Centralized constants for the cutout pipeline and batch orchestrator.

Ground rules:
- masks are float32 in [0,1], images are RGB(A) uint8
- tunables that users change live in settings.py, not here
"""

# Longest edge fed to the segmentation model; larger sources are downscaled first.
MAX_INFERENCE_DIMENSION = 4096

# BiRefNet patches its input; the side must be divisible by the patch grid.
MODEL_INPUT_SIZE = 1088
PAD_COLOR = 127

IMAGENET_MEAN = [0.485, 0.456, 0.406]
IMAGENET_STD = [0.229, 0.224, 0.225]

# Alpha byte a pixel must exceed to count toward coverage.
COVERAGE_ALPHA_BYTE = 20
# Auto-crop looks at alpha/255 > this.
CROP_ALPHA_THRESHOLD = 0.1
# Connected-component cleanup binarizes at this level.
COMPONENT_ALPHA_THRESHOLD = 0.05

# Quality metrics bands.
SEMI_TRANSPARENT_LOW = 0.05
OPAQUE_ALPHA = 0.95
ASPECT_RATIO_TOLERANCE = 0.05

DESPECKLE_RADIUS = 1
EDGE_SMOOTHING_RADIUS = 1.5
HAIR_MIN_FEATHER = 4.0
GLASS_MIN_FEATHER = 3.0
GLASS_THRESHOLD_FACTOR = 0.85

SOFT_SHADOW_RADIUS = 8.0
PRESERVED_SHADOW_RADIUS = 14.0
SHADOW_LAYER_RADIUS = 12.0
SHADOW_OPACITY = 0.35

MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 1.0

# Orchestrator cadence (seconds).
PAUSE_POLL_INTERVAL = 0.3
METRICS_INTERVAL = 1.0

DEFAULT_CONCURRENCY = 3
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 6

MODEL_FILE_SUFFIXES = (".torchscript", ".pt", ".pth")

UNAVAILABLE_MODEL_WARNING = "Segmentation model not available. Output needs review."
SMALL_OBJECT_WARNING = "Detected object below minimum size threshold."
