from __future__ import annotations

from typing import Tuple

import numpy as np

from .config import ASPECT_RATIO_TOLERANCE
from .contracts import AssetQualityMetrics
from .raster import edge_smoothness_and_artifacts
from .settings import QualitySettings


def analyze(mask: np.ndarray, original_size: Tuple[int, int], settings: QualitySettings) -> AssetQualityMetrics:
    """
    QC metrics for a finished mask.

    original_size is (width, height) of the image the mask belongs to.
    """
    width, height = original_size
    resolution_ok = min(width, height) >= settings.min_resolution and max(width, height) <= settings.max_resolution

    ratio = width / max(height, 1)
    aspect_ratio_ok = any(abs(allowed - ratio) < ASPECT_RATIO_TOLERANCE for allowed in settings.allowed_aspect_ratios)

    smoothness, artifacts, confidence = edge_smoothness_and_artifacts(mask)
    qc_passed = (
        resolution_ok
        and aspect_ratio_ok
        and smoothness >= settings.edge_smoothness_threshold
        and artifacts <= settings.transparency_artifacts_threshold
    )
    return AssetQualityMetrics(
        edge_smoothness_score=smoothness,
        transparency_artifacts_score=artifacts,
        resolution_ok=resolution_ok,
        aspect_ratio_ok=aspect_ratio_ok,
        confidence_score=confidence,
        qc_passed=qc_passed,
    )
